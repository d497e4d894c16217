"""Generación del PDF del ticket con ReportLab"""
import logging
from io import BytesIO
from typing import List, Optional

from reportlab.lib.colors import HexColor
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from services.ticket_purchase.models.ticket import TicketRecord
from services.ticket_validation.services.qr_codec import QRArtifact

logger = logging.getLogger(__name__)

PRIMARY_COLOR = HexColor("#4f46e5")
SECONDARY_COLOR = HexColor("#1f2937")
TEXT_COLOR = HexColor("#6b7280")
BG_COLOR = HexColor("#f8fafc")
BORDER_COLOR = HexColor("#e5e7eb")


def _wrap(c: canvas.Canvas, text: str, font: str, size: int, max_width: float) -> List[str]:
    words = text.split()
    if not words:
        return [""]
    lines = []
    current_line = words[0]
    for word in words[1:]:
        test_line = current_line + " " + word
        if c.stringWidth(test_line, font, size) < max_width:
            current_line = test_line
        else:
            lines.append(current_line)
            current_line = word
    lines.append(current_line)
    return lines


def _draw_field(c: canvas.Canvas, label: str, value: str, x: float, y: float, max_width: float) -> float:
    c.setFillColor(TEXT_COLOR)
    c.setFont("Helvetica", 11)
    c.drawString(x, y, label)
    c.setFillColor(SECONDARY_COLOR)
    c.setFont("Helvetica-Bold", 13)
    lines = _wrap(c, value, "Helvetica-Bold", 13, max_width)
    for i, line in enumerate(lines):
        c.drawString(x, y - 6*mm - i*5*mm, line)
    return y - (len(lines) * 5*mm + 10*mm)


def generate_ticket_pdf(ticket: TicketRecord, qr: QRArtifact, brand_name: Optional[str] = None) -> bytes:
    """
    Genera el PDF de una página con los datos del evento y el QR

    El QR va en la primera página, que es la única que se rasteriza al validar.
    """
    buffer = BytesIO()
    c = canvas.Canvas(buffer, pagesize=A4)
    c.setTitle(f"Ticket {ticket.reference}")
    width, height = A4
    content_width = width - 80*mm

    # Header
    c.setFillColor(BG_COLOR)
    c.rect(0, height - 50*mm, width, 50*mm, fill=1, stroke=0)
    c.setFillColor(PRIMARY_COLOR)
    c.setFont("Helvetica-Bold", 26)
    c.drawCentredString(width/2, height - 28*mm, brand_name or "Event Ticket")

    c.setStrokeColor(BORDER_COLOR)
    c.setLineWidth(2)
    c.line(40*mm, height - 45*mm, width - 40*mm, height - 45*mm)

    # Título del evento
    y_pos = height - 62*mm
    c.setFillColor(SECONDARY_COLOR)
    c.setFont("Helvetica-Bold", 22)
    title_lines = _wrap(c, ticket.event_name, "Helvetica-Bold", 22, content_width)
    for i, line in enumerate(title_lines):
        c.drawCentredString(width/2, y_pos - i*8*mm, line)
    y_pos -= len(title_lines) * 8*mm + 6*mm

    # QR centrado
    qr_size = 60*mm
    qr_x = (width - qr_size) / 2
    qr_y = y_pos - qr_size
    c.setStrokeColor(BORDER_COLOR)
    c.setLineWidth(1)
    c.rect(qr_x - 2*mm, qr_y - 2*mm, qr_size + 4*mm, qr_size + 4*mm, fill=0, stroke=1)
    c.drawImage(ImageReader(BytesIO(qr.png)), qr_x, qr_y, width=qr_size, height=qr_size)

    y_pos = qr_y - 10*mm
    c.setFillColor(TEXT_COLOR)
    c.setFont("Helvetica", 11)
    c.drawCentredString(width/2, y_pos, "Escanea este código en la entrada")
    c.setFont("Helvetica", 9)
    c.drawCentredString(width/2, y_pos - 5*mm, ticket.reference)

    # Detalles
    y_pos -= 18*mm
    y_pos = _draw_field(c, "Fecha:", f"{ticket.event_date} {ticket.event_time}".strip(), 40*mm, y_pos, content_width)
    y_pos = _draw_field(c, "Ubicación:", ticket.location, 40*mm, y_pos, content_width)
    y_pos = _draw_field(c, "Tipo:", ticket.tier.value, 40*mm, y_pos, content_width)

    # Titular
    c.setFillColor(HexColor("#eef2ff"))
    c.rect(40*mm, y_pos - 15*mm, content_width, 20*mm, fill=1, stroke=0)
    c.setFillColor(PRIMARY_COLOR)
    c.setFont("Helvetica", 11)
    c.drawString(44*mm, y_pos - 4*mm, "Titular del Ticket")
    c.setFillColor(SECONDARY_COLOR)
    c.setFont("Helvetica-Bold", 15)
    c.drawString(44*mm, y_pos - 11*mm, ticket.holder_name)

    c.showPage()
    c.save()

    pdf_bytes = buffer.getvalue()
    logger.debug(f"PDF generado para {ticket.reference} ({len(pdf_bytes)} bytes)")
    return pdf_bytes
