import re


def clean_md(text: str) -> str:
    """
    Sanitize markdown artifacts from model output.
    Removes:
    - Leading headers (#, ##)
    - Bold markers (**, __)
    - Leading bullets (-, *, •)
    - Leading step numbers ("1." / "2)")
    """
    if not text:
        return ""

    # Remove bolding (**text** -> text)
    text = re.sub(r"(\*\*|__)(.*?)\1", r"\2", text)

    # Remove leading headers (# Title -> Title)
    text = re.sub(r"^\s*#+\s+", "", text)

    # Remove leading bullets (- Item -> Item)
    text = re.sub(r"^\s*[-*•]\s+", "", text)

    # Remove leading enumeration (1. Mix -> Mix)
    text = re.sub(r"^\s*\d{1,2}[.)]\s+", "", text)

    return text.strip()


def normalize_text(value: str) -> str:
    """Trim and collapse internal whitespace."""
    return re.sub(r"\s+", " ", (value or "").strip())


def normalize_ingredient_name(value: str) -> str:
    """Lowercase, whitespace-collapsed ingredient label used for search and previews."""
    return normalize_text(value).lower()


def normalize_search_query(value: str) -> str:
    return (value or "").strip().lower()


def clamp(text: str, length: int) -> str:
    if len(text) <= length:
        return text
    return text[:length-1].rstrip() + "…"
