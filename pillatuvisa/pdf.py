import io
from pathlib import Path

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

from pillatuvisa.models import Receipt
from pillatuvisa.receipts import format_amount

LOGO_PATH = Path(__file__).parent / "templates" / "logo.png"

RED = colors.HexColor("#dc2626")
GRAY = colors.HexColor("#6b7280")
DARK = colors.HexColor("#111827")
LINE = colors.HexColor("#e5e7eb")


def render_receipt_pdf(receipt: Receipt, issue_date: str) -> bytes:
    output = io.BytesIO()
    pdf = canvas.Canvas(output, pagesize=A4)
    pdf.setTitle(f"Recibo {receipt.id}")
    pdf.setAuthor("Pilla Tu Visa")
    width, height = A4
    left, right = 50, width - 50
    amount = f"${format_amount(receipt.monto)}"

    # cabecera
    top = height - 50
    if LOGO_PATH.exists():
        pdf.drawImage(str(LOGO_PATH), left, top - 60, width=100, height=50, preserveAspectRatio=True, mask="auto")
    pdf.setFont("Helvetica-Bold", 20)
    pdf.setFillColor(DARK)
    pdf.drawRightString(right, top - 30, "Comprobante Oficial de Pago")
    pdf.setStrokeColor(RED)
    pdf.setLineWidth(3)
    pdf.line(left, top - 60, right, top - 60)

    # datos del recibo
    y = top - 90
    rows = [
        ("Recibo N.º:", str(receipt.id)),
        ("Fecha de Emisión:", issue_date),
        ("Cliente:", receipt.nombre),
        ("Email:", receipt.email),
        ("Método de Pago:", receipt.metodo),
    ]
    for label, value in rows:
        pdf.setFont("Helvetica-Bold", 10)
        pdf.setFillColor(GRAY)
        pdf.drawString(left, y, label)
        pdf.setFont("Helvetica", 10)
        pdf.setFillColor(DARK)
        pdf.drawString(left + 150, y, str(value or ""))
        y -= 20

    # tabla concepto / monto
    y -= 20
    pdf.setFont("Helvetica-Bold", 10)
    pdf.setFillColor(GRAY)
    pdf.drawString(left, y, "CONCEPTO DEL SERVICIO")
    pdf.drawRightString(right, y, "MONTO PAGADO")
    pdf.setStrokeColor(LINE)
    pdf.setLineWidth(1)
    pdf.line(left, y - 8, right, y - 8)

    y -= 30
    pdf.setFont("Helvetica", 12)
    pdf.setFillColor(DARK)
    pdf.drawString(left, y, receipt.concepto or "")
    pdf.drawRightString(right, y, amount)
    pdf.line(left, y - 10, right, y - 10)

    y -= 30
    pdf.setFont("Helvetica-Bold", 12)
    pdf.setFillColor(GRAY)
    pdf.drawString(left, y, "TOTAL")
    pdf.setFillColor(DARK)
    pdf.drawRightString(right, y, amount)

    pdf.setFont("Helvetica", 10)
    pdf.setFillColor(GRAY)
    pdf.drawCentredString(width / 2, 80, "Este comprobante es generado automáticamente por el sistema Pilla Tu Visa.")

    pdf.showPage()
    pdf.save()
    return output.getvalue()
