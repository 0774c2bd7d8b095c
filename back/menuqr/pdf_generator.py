"""
Account Statement PDF Generator

Restaurant balance statements (plan, balance and ledger entries) using ReportLab.
"""

from datetime import datetime, timezone
from decimal import Decimal
from io import BytesIO
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER, TA_RIGHT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import (
    HRFlowable,
    Paragraph,
    SimpleDocTemplate,
    Spacer,
    Table,
    TableStyle,
)


PRIMARY_COLOR = colors.HexColor("#0f766e")
DARK_COLOR = colors.HexColor("#1f2937")
MUTED_COLOR = colors.HexColor("#6b7280")
BORDER_COLOR = colors.HexColor("#e5e7eb")

ENTRY_LABELS = {
    "monthly_billing": "Monthly fee",
    "billing_failed": "Billing failed",
    "plan_upgrade": "Plan change",
    "balance_add": "Top-up",
}
CREDIT_TYPES = {"balance_add"}


def _format_date(value) -> str:
    if isinstance(value, datetime):
        return value.strftime('%b %d, %Y')
    return str(value) if value else '-'


def _format_money(amount, currency: str) -> str:
    if amount is None:
        return '-'
    return f"{currency} {Decimal(amount):,.2f}"


def generate_account_statement_pdf(
    restaurant_data: dict,
    entries: list[dict],
    currency: str = "PKR",
) -> BytesIO:
    """
    Generate a PDF account statement for a restaurant.

    Args:
        restaurant_data: name, owner_name, owner_email, plan_name, status,
                         account_balance, plan_expiry_date, next_billing_date
        entries: Ledger entries (created_at, type, description, amount,
                 balance_after, status), newest first
        currency: Currency code printed next to amounts

    Returns:
        BytesIO buffer containing the PDF
    """
    buffer = BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        rightMargin=20*mm,
        leftMargin=20*mm,
        topMargin=20*mm,
        bottomMargin=20*mm,
    )

    styles = getSampleStyleSheet()

    title_style = ParagraphStyle(
        'StatementTitle',
        parent=styles['Heading1'],
        fontSize=22,
        textColor=PRIMARY_COLOR,
        alignment=TA_RIGHT,
    )
    subtitle_style = ParagraphStyle(
        'StatementSubtitle',
        parent=styles['Normal'],
        fontSize=10,
        textColor=MUTED_COLOR,
        alignment=TA_RIGHT,
    )
    name_style = ParagraphStyle(
        'RestaurantName',
        parent=styles['Normal'],
        fontSize=14,
        textColor=DARK_COLOR,
        fontName='Helvetica-Bold',
    )
    detail_style = ParagraphStyle(
        'Detail',
        parent=styles['Normal'],
        fontSize=10,
        textColor=MUTED_COLOR,
        leading=14,
    )
    section_header_style = ParagraphStyle(
        'SectionHeader',
        parent=styles['Normal'],
        fontSize=10,
        textColor=MUTED_COLOR,
        fontName='Helvetica-Bold',
        spaceBefore=8*mm,
        spaceAfter=3*mm,
    )
    cell_style = ParagraphStyle(
        'Cell',
        parent=styles['Normal'],
        fontSize=9,
        textColor=DARK_COLOR,
        leading=12,
    )
    balance_style = ParagraphStyle(
        'Balance',
        parent=styles['Normal'],
        fontSize=16,
        textColor=DARK_COLOR,
        fontName='Helvetica-Bold',
        alignment=TA_RIGHT,
    )
    footer_style = ParagraphStyle(
        'Footer',
        parent=styles['Normal'],
        fontSize=8,
        textColor=MUTED_COLOR,
        alignment=TA_CENTER,
    )

    story = []
    generated_at = datetime.now(timezone.utc)

    # ===== HEADER =====
    owner_lines = [restaurant_data.get('owner_name') or '', restaurant_data.get('owner_email') or '']
    header_table = Table(
        [
            [
                Paragraph(escape(restaurant_data.get('name', '')), name_style),
                Paragraph("ACCOUNT STATEMENT", title_style),
            ],
            [
                Paragraph('<br/>'.join(escape(line) for line in owner_lines if line), detail_style),
                Paragraph(f"<b>Date:</b> {generated_at:%B %d, %Y}", subtitle_style),
            ],
        ],
        colWidths=[90*mm, 80*mm],
    )
    header_table.setStyle(TableStyle([
        ('VALIGN', (0, 0), (-1, -1), 'TOP'),
        ('ALIGN', (1, 0), (1, -1), 'RIGHT'),
    ]))
    story.append(header_table)
    story.append(Spacer(1, 6*mm))
    story.append(HRFlowable(width="100%", thickness=1, color=BORDER_COLOR))

    # ===== ACCOUNT SUMMARY =====
    story.append(Paragraph("ACCOUNT", section_header_style))
    summary_lines = [
        f"Plan: {restaurant_data.get('plan_name') or 'No Plan'}",
        f"Status: {restaurant_data.get('status', '-')}",
        f"Plan expires: {_format_date(restaurant_data.get('plan_expiry_date'))}",
        f"Next billing: {_format_date(restaurant_data.get('next_billing_date'))}",
    ]
    summary_table = Table(
        [[
            Paragraph('<br/>'.join(summary_lines), detail_style),
            Paragraph(_format_money(restaurant_data.get('account_balance'), currency), balance_style),
        ]],
        colWidths=[110*mm, 60*mm],
    )
    summary_table.setStyle(TableStyle([('VALIGN', (0, 0), (-1, -1), 'MIDDLE')]))
    story.append(summary_table)

    # ===== LEDGER =====
    story.append(Paragraph("TRANSACTIONS", section_header_style))
    table_data = [[
        Paragraph("<b>Date</b>", cell_style),
        Paragraph("<b>Type</b>", cell_style),
        Paragraph("<b>Description</b>", cell_style),
        Paragraph("<b>Amount</b>", cell_style),
        Paragraph("<b>Balance</b>", cell_style),
    ]]
    for entry in entries:
        entry_type = entry.get('type', '')
        amount = Decimal(entry.get('amount') or 0)
        # Downgrades are stored as negative plan changes and credit the balance
        credit = entry_type in CREDIT_TYPES or amount < 0
        if entry.get('status') == 'failed':
            amount_text = f'<font color="#6b7280">{_format_money(abs(amount), currency)}</font>'
        else:
            color = "#059669" if credit else "#dc2626"
            sign = '+' if credit else '-'
            amount_text = f'<font color="{color}">{sign}{_format_money(abs(amount), currency)}</font>'
        table_data.append([
            Paragraph(_format_date(entry.get('created_at')), cell_style),
            Paragraph(ENTRY_LABELS.get(entry_type, entry_type), cell_style),
            Paragraph(escape(entry.get('description', '')), cell_style),
            Paragraph(amount_text, cell_style),
            Paragraph(_format_money(entry.get('balance_after'), currency), cell_style),
        ])

    if not entries:
        table_data.append([
            Paragraph("-", cell_style),
            Paragraph("-", cell_style),
            Paragraph("No transactions yet", detail_style),
            Paragraph("-", cell_style),
            Paragraph("-", cell_style),
        ])

    ledger_table = Table(
        table_data,
        colWidths=[24*mm, 24*mm, 70*mm, 26*mm, 26*mm],
        repeatRows=1,
    )
    ledger_table.setStyle(TableStyle([
        ('BACKGROUND', (0, 0), (-1, 0), colors.HexColor("#f9fafb")),
        ('BOTTOMPADDING', (0, 0), (-1, 0), 8),
        ('TOPPADDING', (0, 0), (-1, 0), 8),
        ('TOPPADDING', (0, 1), (-1, -1), 5),
        ('BOTTOMPADDING', (0, 1), (-1, -1), 5),
        ('ALIGN', (3, 0), (-1, -1), 'RIGHT'),
        ('VALIGN', (0, 0), (-1, -1), 'MIDDLE'),
        ('LINEBELOW', (0, 0), (-1, 0), 1, BORDER_COLOR),
        ('LINEBELOW', (0, 1), (-1, -2), 0.5, BORDER_COLOR),
        ('LINEBELOW', (0, -1), (-1, -1), 1, BORDER_COLOR),
    ]))
    story.append(ledger_table)

    # ===== FOOTER =====
    story.append(Spacer(1, 15*mm))
    story.append(HRFlowable(width="100%", thickness=0.5, color=BORDER_COLOR))
    story.append(Spacer(1, 3*mm))
    story.append(Paragraph(f"Generated on {generated_at:%B %d, %Y at %I:%M %p} UTC", footer_style))

    doc.build(story)
    buffer.seek(0)
    return buffer
