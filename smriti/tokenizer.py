"""
Tokenizer shared by indexing and querying.

Titles, URLs, descriptions and keywords all go through the same function,
so a query term can match a URL fragment as readily as a title word.
"""

import re
from typing import Optional

# Runs of letters and digits. Underscore counts as a separator, so
# "/docs/rust_guide-v2?q=1" splits into docs, rust, guide, v2, q, 1.
_TOKEN_RE = re.compile(r"[^\W_]+")


def tokenize(text) -> list[str]:
    """Split text into unique, case-folded alphanumeric tokens.

    Tokens are returned in first-occurrence order, which is the canonical
    ordering used for persistence. Never raises: anything that is not a
    string yields an empty list.
    """
    if not text or not isinstance(text, str):
        return []
    try:
        folded = text.casefold()
    except (TypeError, ValueError):
        return []
    return list(dict.fromkeys(_TOKEN_RE.findall(folded)))


def tokenize_fields(*parts: Optional[str]) -> list[str]:
    """Tokenize several optional text fields as one text.

    None and empty parts are skipped. Equivalent to tokenizing the parts
    joined by spaces.
    """
    return tokenize(" ".join(p for p in parts if p and isinstance(p, str)))
