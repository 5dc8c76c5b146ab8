"""
Parley - Prompt Context Templates
==================================
Literal strings that shape the retrieved-context block handed to the
caller's system prompt, plus the fixed statements produced by
conversation pattern analysis.  Kept here so wording changes never
touch application logic.

Exports
-------
NO_CONTEXT_FOUND, SECTION_HEADERS, KNOWLEDGE_ITEM_TEMPLATE,
PREFERENCE_ITEM_TEMPLATE, STATED_TAG, INFERRED_TAG,
PATTERN_STATEMENTS, CASUAL_WORDS.
"""

# ══════════════════════════════════════════════════════════════════════
#  CONTEXT BLOCK
# ══════════════════════════════════════════════════════════════════════

NO_CONTEXT_FOUND: str = "No relevant context found."

# Render order is fixed, independent of global similarity rank
SECTION_HEADERS: dict[str, str] = {
    "product_info": "PRODUCT INFORMATION:",
    "business_rules": "BUSINESS RULES:",
    "instructions": "INSTRUCTIONS:",
    "user_preferences": "USER PREFERENCES:",
}

KNOWLEDGE_ITEM_TEMPLATE: str = "{index}. {title} ({percent}% relevant)\n   {content}\n\n"
PREFERENCE_ITEM_TEMPLATE: str = "{index}. {content} [{tag}]\n"

STATED_TAG: str = "stated"
INFERRED_TAG: str = "inferred"


# ══════════════════════════════════════════════════════════════════════
#  PATTERN ANALYSIS STATEMENTS  (statement, confidence)
# ══════════════════════════════════════════════════════════════════════

PATTERN_STATEMENTS: dict[str, tuple[str, float]] = {
    "brief": ("prefers brief, concise responses", 0.7),
    "detailed": ("prefers detailed, comprehensive responses", 0.7),
    "inquisitive": ("likes to ask many questions and learn details", 0.75),
    "casual": ("prefers casual, friendly conversation style", 0.65),
    "formal": ("prefers formal, professional communication", 0.65),
    "quick": ("expects quick responses, values speed", 0.6),
}

CASUAL_WORDS: tuple[str, ...] = ("yeah", "yep", "yup", "gonna", "wanna", "kinda", "lol", "haha")
