from __future__ import annotations

from io import BytesIO
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.enums import TA_RIGHT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import KeepTogether, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .menu import MENU, PRACTICAL_INFORMATION, format_price

MENU_DOCUMENT_FILENAME = "menu-complexe-lesims.pdf"


def render_menu_pdf(restaurant_name: str) -> bytes:
    buffer = BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        leftMargin=0.75 * inch,
        rightMargin=0.75 * inch,
        topMargin=0.75 * inch,
        bottomMargin=0.75 * inch,
        title=f"Menu {restaurant_name}",
        author=restaurant_name,
    )

    styles = getSampleStyleSheet()
    title_style = ParagraphStyle(
        "menu_title",
        parent=styles["Heading1"],
        fontName="Helvetica-Bold",
        fontSize=22,
        leading=26,
        textColor=colors.HexColor("#111827"),
    )
    heading_style = ParagraphStyle(
        "menu_heading",
        parent=styles["Heading3"],
        fontName="Helvetica-Bold",
        fontSize=12,
        leading=15,
        textColor=colors.HexColor("#9d174d"),
        spaceAfter=3,
    )
    body_style = ParagraphStyle(
        "menu_body",
        parent=styles["BodyText"],
        fontName="Helvetica",
        fontSize=9.5,
        leading=12,
        textColor=colors.HexColor("#111827"),
    )
    detail_style = ParagraphStyle(
        "menu_detail",
        parent=body_style,
        fontSize=8,
        leading=10,
        textColor=colors.HexColor("#6b7280"),
    )
    price_style = ParagraphStyle("menu_price", parent=body_style, alignment=TA_RIGHT)

    story: list = []
    story.append(Paragraph(escape(restaurant_name), title_style))
    story.append(Paragraph("Notre menu", heading_style))
    story.append(Spacer(1, 0.12 * inch))

    for section in MENU:
        rows: list[list[object]] = []
        for item in section.items:
            label: list[object] = [Paragraph(escape(item.name), body_style)]
            if item.description:
                label.append(Paragraph(escape(item.description), detail_style))
            rows.append([label, Paragraph(escape(format_price(item.price)), price_style)])
        table = Table(rows, colWidths=[4.9 * inch, 1.8 * inch], hAlign="LEFT")
        table.setStyle(
            TableStyle(
                [
                    ("VALIGN", (0, 0), (-1, -1), "TOP"),
                    ("LINEBELOW", (0, 0), (-1, -1), 0.4, colors.HexColor("#e5e7eb")),
                    ("LEFTPADDING", (0, 0), (-1, -1), 2),
                    ("RIGHTPADDING", (0, 0), (-1, -1), 2),
                    ("TOPPADDING", (0, 0), (-1, -1), 3),
                    ("BOTTOMPADDING", (0, 0), (-1, -1), 3),
                ]
            )
        )
        block: list = [Paragraph(escape(section.title), heading_style), table]
        if section.note:
            block.append(Paragraph(escape(section.note), detail_style))
        block.append(Spacer(1, 0.14 * inch))
        story.append(KeepTogether(block))

    story.append(Paragraph("Informations pratiques", heading_style))
    for line in PRACTICAL_INFORMATION:
        story.append(Paragraph(f"&bull; {escape(line)}", body_style))

    doc.build(story)
    return buffer.getvalue()
