from typing import Optional

from schemas import SubjectRecord

SUBJECT_HEADER = "Based on the following information about a plant:"
EXPERT_FRAMING = (
    "As an expert in traditional medicinal plants and Ayurvedic medicine, "
    "please provide information about the following:"
)
INSTRUCTION_SUFFIX = (
    "Please provide a comprehensive, accurate, and science-based response, "
    "organised in clear paragraphs. Include information about traditional "
    "Ayurvedic, Unani, or Siddha medicine applications where relevant."
)

# (label, SubjectRecord attribute) in render order
SUBJECT_FIELDS = (
    ("Plant Name", "name"),
    ("Scientific Name", "scientific_name"),
    ("Description", "description"),
    ("Medicinal Uses", "uses"),
    ("How to Use", "usage_instructions"),
)


def subject_lines(subject: SubjectRecord) -> list[str]:
    """Labelled lines for every field the record actually has."""
    lines = []
    for label, attr in SUBJECT_FIELDS:
        value = getattr(subject, attr)
        if value is None or not value.strip():
            continue
        lines.append(f"{label}: {value.strip()}")
    return lines


def build_prompt(query: str, subject: Optional[SubjectRecord] = None) -> str:
    """
    Builds the text sent to Gemini. Pure templating: the same
    (query, subject) always gives the same string.
    """
    query = query.strip()
    lines = subject_lines(subject) if subject is not None else []

    # a record with no usable field is treated as no record
    if lines:
        block = "\n".join(lines)
        return f"{SUBJECT_HEADER}\n\n{block}\n\n{query}\n\n{INSTRUCTION_SUFFIX}"

    return f"{EXPERT_FRAMING} {query}\n\n{INSTRUCTION_SUFFIX}"
