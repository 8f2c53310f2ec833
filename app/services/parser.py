# =============================================================================
# Document Parser — Per-Page Text Extraction
# =============================================================================
#
# Turns a stored grounding document into a list of pages of plain text,
# the unit the chunker works on.
#
#   - PDF: Docling (layout-aware, table structure, OCR for scanned pages).
#     Items are walked in reading order and grouped by their provenance
#     page number; tables are rendered as markdown so figures survive
#     chunking as readable rows.
#   - .txt / .md: read as UTF-8 and returned as a single page.
#
# DESIGN DECISION: Own dataclasses (ParsedPage, ParsedDocument) instead of
# Docling types downstream. The chunker and ingestion pipeline only see
# (page_number, text) pairs, so the parser can be swapped freely.
# =============================================================================

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path

from docling.datamodel.base_models import InputFormat
from docling.datamodel.pipeline_options import PdfPipelineOptions
from docling.document_converter import DocumentConverter, PdfFormatOption
from docling_core.types.doc.labels import DocItemLabel

logger = logging.getLogger(__name__)

TEXT_SUFFIXES = {".txt", ".md", ".markdown"}
SUPPORTED_SUFFIXES = TEXT_SUFFIXES | {".pdf"}


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ParsedPage:
    page_number: int  # 1-indexed
    text: str


@dataclass
class ParsedDocument:
    """Pages in reading order plus document-level facts."""

    pages: list[ParsedPage] = field(default_factory=list)
    page_count: int = 0
    filename: str = ""

    @property
    def full_text(self) -> str:
        return "\n\n".join(p.text for p in self.pages)


# ---------------------------------------------------------------------------
# Docling Converter — Lazy Singleton
# ---------------------------------------------------------------------------
# Initialisation loads layout models (seconds on first use), so one
# converter is shared by every document a worker process handles.
# ---------------------------------------------------------------------------

_converter: DocumentConverter | None = None


def _get_converter() -> DocumentConverter:
    global _converter
    if _converter is None:
        logger.info("Initializing Docling DocumentConverter (first use)")
        pipeline_options = PdfPipelineOptions()
        pipeline_options.do_table_structure = True
        pipeline_options.do_ocr = True

        _converter = DocumentConverter(
            format_options={
                InputFormat.PDF: PdfFormatOption(pipeline_options=pipeline_options),
            }
        )
    return _converter


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def parse_document(file_path: str) -> ParsedDocument:
    """
    Extract per-page text from a PDF or plain-text file.

    Raises:
        FileNotFoundError: The file does not exist.
        ValueError: Unsupported file type.
        RuntimeError: Docling failed to convert the PDF.

    Pipeline position: ingestion step 1 (parse → chunk → embed → store).
    """
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"Document not found: {file_path}")

    suffix = path.suffix.lower()
    if suffix in TEXT_SUFFIXES:
        return parse_text_file(path)
    if suffix == ".pdf":
        return parse_pdf(path)
    raise ValueError(
        f"Unsupported document type '{suffix}'. "
        f"Supported: {sorted(SUPPORTED_SUFFIXES)}"
    )


def parse_text_file(path: Path) -> ParsedDocument:
    text = path.read_text(encoding="utf-8", errors="replace").strip()
    pages = [ParsedPage(page_number=1, text=text)] if text else []
    logger.info("Parsed text file '%s': %d chars", path.name, len(text))
    return ParsedDocument(pages=pages, page_count=1, filename=path.name)


def parse_pdf(path: Path) -> ParsedDocument:
    logger.info("Parsing PDF: %s", path.name)
    converter = _get_converter()

    try:
        result = converter.convert(str(path))
    except Exception as exc:
        raise RuntimeError(f"Docling failed to parse '{path.name}': {exc}") from exc

    blocks_by_page: dict[int, list[str]] = defaultdict(list)

    for item, _level in result.document.iterate_items():
        # Items without provenance are attached to page 1
        page_no = 1
        if getattr(item, "prov", None):
            page_no = item.prov[0].page_no or 1

        label = getattr(item, "label", None)

        if label == DocItemLabel.TABLE:
            text = _table_to_markdown(item)
        elif label in (
            DocItemLabel.SECTION_HEADER,
            DocItemLabel.TITLE,
            DocItemLabel.TEXT,
            DocItemLabel.LIST_ITEM,
            DocItemLabel.CAPTION,
            DocItemLabel.FOOTNOTE,
        ):
            text = getattr(item, "text", "").strip()
        else:
            continue

        if text:
            blocks_by_page[page_no].append(text)

    pages = [
        ParsedPage(page_number=n, text="\n\n".join(blocks_by_page[n]))
        for n in sorted(blocks_by_page)
    ]
    page_count = len(result.document.pages) if getattr(result.document, "pages", None) else (
        max(blocks_by_page) if blocks_by_page else 0
    )

    logger.info(
        "Parsed '%s': %d pages with text (%d total), %d chars",
        path.name, len(pages), page_count, sum(len(p.text) for p in pages),
    )
    return ParsedDocument(pages=pages, page_count=page_count, filename=path.name)


def _table_to_markdown(table_item: object) -> str:
    """Render a Docling table as markdown, or its plain text if export fails."""
    try:
        if hasattr(table_item, "export_to_dataframe"):
            df = table_item.export_to_dataframe()
            return df.to_markdown(index=False)
    except Exception as exc:
        logger.warning("Table export to DataFrame failed: %s", exc)

    text = getattr(table_item, "text", "")
    return text.strip() if text else ""
