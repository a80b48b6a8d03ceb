"""
Proof Pack PDF Theme

Shared reportlab building blocks so every proof-pack document has the same
header, KPI row, table styling, empty state and footer.
"""

import io
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import inch
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle

from riskmate.pdf_normalize import safe_text_for_pdf, format_datetime, active_filters

PRIMARY = colors.HexColor("#111827")
SECONDARY_TEXT = colors.HexColor("#4B5563")
MUTED = colors.HexColor("#9CA3AF")
ACCENT = colors.HexColor("#F97316")
ZEBRA = colors.HexColor("#F3F4F6")
BORDER = colors.HexColor("#E5E7EB")

PAGE_MARGIN = 0.6 * inch
CONTENT_WIDTH = letter[0] - 2 * PAGE_MARGIN


@dataclass
class PackMeta:
    pack_id: str
    organization_name: str
    generated_by: str
    generated_by_role: str
    generated_at: str
    time_range: str


_styles = None


def styles() -> Dict[str, ParagraphStyle]:
    global _styles
    if _styles is None:
        base = getSampleStyleSheet()
        _styles = {
            "title": ParagraphStyle("RmTitle", parent=base["Title"], alignment=0, textColor=PRIMARY, fontSize=20, spaceAfter=6),
            "section": ParagraphStyle("RmSection", parent=base["Heading2"], textColor=PRIMARY, fontSize=12, spaceBefore=10, spaceAfter=6),
            "body": ParagraphStyle("RmBody", parent=base["Normal"], textColor=SECONDARY_TEXT, fontSize=9, leading=12),
            "meta": ParagraphStyle("RmMeta", parent=base["Normal"], textColor=SECONDARY_TEXT, fontSize=8, leading=10),
            "cell": ParagraphStyle("RmCell", parent=base["Normal"], fontSize=7.5, leading=9),
            "header_cell": ParagraphStyle("RmHeaderCell", parent=base["Normal"], fontName="Helvetica-Bold", fontSize=7.5, leading=9, textColor=colors.white),
            "kpi_value": ParagraphStyle("RmKpiValue", parent=base["Normal"], fontName="Helvetica-Bold", fontSize=14, leading=17, textColor=PRIMARY),
            "kpi_label": ParagraphStyle("RmKpiLabel", parent=base["Normal"], fontSize=7.5, leading=9, textColor=SECONDARY_TEXT),
            "mono": ParagraphStyle("RmMono", parent=base["Normal"], fontName="Courier", fontSize=7, leading=9, textColor=SECONDARY_TEXT),
        }
    return _styles


def para(text: Any, style: str = "body", context: Optional[str] = None) -> Paragraph:
    """Sanitized, markup-escaped paragraph."""
    return Paragraph(escape(safe_text_for_pdf(str(text) if text is not None else "", context)), styles()[style])


def header_block(title: str, meta: PackMeta) -> List[Any]:
    lines = [
        f"Pack ID: {meta.pack_id}",
        f"Organization: {meta.organization_name}",
        f"Generated by: {meta.generated_by} ({meta.generated_by_role})",
        f"Generated at: {format_datetime(meta.generated_at)}",
        f"Time range: {meta.time_range}",
    ]
    story: List[Any] = [para(title, "title", "header title")]
    story.extend(para(line, "meta", "header metadata") for line in lines)
    story.append(Spacer(1, 0.2 * inch))
    return story


def section_title(text: str) -> Paragraph:
    return para(text, "section", "section title")


def kpi_row(kpis: Sequence[Tuple[str, Any]], highlight_index: int = 0) -> Table:
    cells = [[para(value, "kpi_value") for _, value in kpis], [para(label, "kpi_label") for label, _ in kpis]]
    width = CONTENT_WIDTH / max(1, len(kpis))
    table = Table(cells, colWidths=[width] * len(kpis))
    commands = [
        ("BOX", (0, 0), (-1, -1), 0.5, BORDER),
        ("INNERGRID", (0, 0), (-1, -1), 0.25, BORDER),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
        ("TOPPADDING", (0, 0), (-1, -1), 6),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 6),
    ]
    if 0 <= highlight_index < len(kpis):
        commands.append(("LINEABOVE", (highlight_index, 0), (highlight_index, 0), 2, ACCENT))
    table.setStyle(TableStyle(commands))
    return table


def data_table(columns: Sequence[Tuple[str, float]], rows: Sequence[Sequence[Any]]) -> Table:
    """Zebra-striped table; column widths are fractions of the content width."""
    total = sum(w for _, w in columns) or 1
    widths = [CONTENT_WIDTH * (w / total) for _, w in columns]
    data = [[para(header, "header_cell") for header, _ in columns]]
    data.extend([para(cell, "cell") for cell in row] for row in rows)

    table = Table(data, colWidths=widths, repeatRows=1)
    commands = [
        ("BACKGROUND", (0, 0), (-1, 0), PRIMARY),
        ("GRID", (0, 0), (-1, -1), 0.25, BORDER),
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
    ]
    for i in range(2, len(data), 2):
        commands.append(("BACKGROUND", (0, i), (-1, i), ZEBRA))
    table.setStyle(TableStyle(commands))
    return table


def empty_state(title: str, message: str, filters: Optional[Dict[str, Any]] = None, action_hint: Optional[str] = None) -> List[Any]:
    story: List[Any] = [section_title(title), para(message)]
    active = active_filters(filters)
    if active:
        story.append(Spacer(1, 0.08 * inch))
        story.append(para("Applied filters:", "meta"))
        story.extend(para(f"{k.replace('_', ' ')}: {v}", "meta") for k, v in active.items())
    if action_hint:
        story.append(Spacer(1, 0.08 * inch))
        story.append(para(action_hint, "meta"))
    return story


def render_pdf(story: List[Any], meta: PackMeta, title: str) -> bytes:
    """Build the document, stamping the pack id and page number on every page."""
    buf = io.BytesIO()
    doc = SimpleDocTemplate(
        buf,
        pagesize=letter,
        leftMargin=PAGE_MARGIN,
        rightMargin=PAGE_MARGIN,
        topMargin=PAGE_MARGIN,
        bottomMargin=0.9 * inch,
        title=title,
        author="Riskmate",
    )

    def footer(canvas, document):
        canvas.saveState()
        canvas.setFont("Helvetica", 7)
        canvas.setFillColor(MUTED)
        canvas.drawString(PAGE_MARGIN, 0.5 * inch, f"Riskmate | {title} | {meta.pack_id}")
        canvas.drawRightString(letter[0] - PAGE_MARGIN, 0.5 * inch, f"Page {document.page}")
        canvas.restoreState()

    doc.build(story, onFirstPage=footer, onLaterPages=footer)
    return buf.getvalue()
