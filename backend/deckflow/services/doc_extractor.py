from dataclasses import dataclass
from io import BytesIO

from docx import Document as DocxDocument
from pypdf import PdfReader


TEXT_MIME_TYPES = {"text/plain", "text/markdown"}
PDF_MIME_TYPE = "application/pdf"
DOCX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


@dataclass
class ExtractionResult:
    text: str
    char_count: int
    truncated: bool


def extract_text(data: bytes, mime_type: str) -> str:
    if mime_type in TEXT_MIME_TYPES:
        return data.decode("utf-8", errors="ignore")

    if mime_type == PDF_MIME_TYPE:
        reader = PdfReader(BytesIO(data))
        return "\n".join((page.extract_text() or "") for page in reader.pages)

    if mime_type == DOCX_MIME_TYPE:
        doc = DocxDocument(BytesIO(data))
        return "\n".join(p.text for p in doc.paragraphs)

    raise ValueError(f"Unsupported MIME type: {mime_type}")


def extract_content(data: bytes, mime_type: str, *, max_chars: int) -> ExtractionResult:
    text = extract_text(data, mime_type).replace("\x00", "").strip()
    truncated = len(text) > max_chars
    if truncated:
        text = text[:max_chars]
    return ExtractionResult(text=text, char_count=len(text), truncated=truncated)
