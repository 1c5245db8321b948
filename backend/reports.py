import io
from datetime import datetime
from typing import Any, Dict, List, Optional
from xml.sax.saxutils import escape

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import pandas as pd
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.platypus import Image as RLImage
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from compliance import ComplianceSummary, TrendPoint


PDF_MEDIA_TYPE = "application/pdf"
EXCEL_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _fmt(value: Any, suffix: str = "") -> str:
    if value is None or value == "":
        return "-"
    return f"{value}{suffix}"


def create_trend_chart(trend: List[TrendPoint]) -> io.BytesIO:
    labels = [point.label for point in trend]
    # Periods without data stay as gaps in the line.
    values = [
        point.values.get("compliance_rate") if point.has_data and point.values else float("nan")
        for point in trend
    ]
    fig, ax = plt.subplots(figsize=(6.4, 2.8))
    ax.plot(labels, values, marker="o", color="#0f766e", linewidth=2)
    ax.axhline(100, color="#94a3b8", linestyle="--", linewidth=1)
    ax.set_ylim(0, 105)
    ax.set_ylabel("Compliance %")
    ax.tick_params(axis="x", labelsize=8)
    ax.tick_params(axis="y", labelsize=8)
    plt.tight_layout()
    buffer = io.BytesIO()
    plt.savefig(buffer, format="png", dpi=150)
    plt.close(fig)
    buffer.seek(0)
    return buffer


def generate_compliance_pdf(
    summary: ComplianceSummary,
    trend: List[TrendPoint],
    unassigned: Optional[List[Dict[str, Any]]] = None,
    generated_at: Optional[datetime] = None,
) -> bytes:
    styles = getSampleStyleSheet()
    title_style = ParagraphStyle(
        name="ReportTitle",
        parent=styles["Title"],
        fontSize=18,
        textColor=colors.HexColor("#0f172a"),
        spaceAfter=6,
    )
    subtitle_style = ParagraphStyle(
        name="ReportSubtitle",
        parent=styles["Normal"],
        fontSize=10,
        textColor=colors.HexColor("#475569"),
        spaceAfter=10,
    )
    section_style = ParagraphStyle(
        name="SectionHeading",
        parent=styles["Heading2"],
        fontSize=12,
        textColor=colors.HexColor("#0f766e"),
        spaceBefore=6,
        spaceAfter=6,
    )
    header_cell = ParagraphStyle(
        name="TableHeaderCell",
        parent=styles["Normal"],
        fontName="Helvetica-Bold",
        fontSize=8.5,
        textColor=colors.whitesmoke,
        leading=10,
    )
    body_cell = ParagraphStyle(
        name="TableBodyCell",
        parent=styles["Normal"],
        fontSize=8,
        textColor=colors.HexColor("#111827"),
        leading=10,
    )

    def _styled_table(data: List[List[Any]], col_widths: Optional[List[int]] = None) -> Table:
        rows = []
        for row_idx, row in enumerate(data):
            style = header_cell if row_idx == 0 else body_cell
            rows.append([Paragraph(escape("" if cell is None else str(cell)), style) for cell in row])
        tbl = Table(rows, colWidths=col_widths, repeatRows=1, hAlign="LEFT")
        tbl.setStyle(
            TableStyle(
                [
                    ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#0f766e")),
                    ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
                    ("GRID", (0, 0), (-1, -1), 0.4, colors.HexColor("#9ca3af")),
                    ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.white, colors.HexColor("#f8fafc")]),
                    ("LEFTPADDING", (0, 0), (-1, -1), 6),
                    ("RIGHTPADDING", (0, 0), (-1, -1), 6),
                    ("TOPPADDING", (0, 0), (-1, -1), 4),
                    ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
                ]
            )
        )
        return tbl

    buffer = io.BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=A4, leftMargin=28, rightMargin=28, topMargin=28, bottomMargin=28)
    elements: List[Any] = [Paragraph("Observation Compliance Report", title_style)]
    stamp = (generated_at or datetime.now()).strftime("%Y-%m-%d %H:%M")
    week_label = summary.week.label if summary.week else "-"
    fortnight_label = summary.fortnight.label if summary.fortnight else "-"
    elements.append(Paragraph(f"Generated on {stamp} | {week_label} / {fortnight_label}", subtitle_style))

    elements.append(
        _styled_table(
            [
                ["Metric", "Value"],
                ["Coordinators", _fmt(summary.total_coordinators)],
                ["Teachers", _fmt(summary.total_teachers)],
                ["Observed", _fmt(summary.observed_count)],
                ["Overall Compliance", _fmt(summary.overall_compliance_rate, "%")],
                ["Week window", summary.week.display if summary.week else "-"],
                ["Fortnight window", summary.fortnight.display if summary.fortnight else "-"],
            ],
            col_widths=[210, 320],
        )
    )
    elements.append(Spacer(1, 10))

    elements.append(Paragraph("Coordinators", section_style))
    coordinator_rows = [["Coordinator", "Teachers", "Observed", "Rate", "Pending"]]
    for row in summary.coordinators:
        coordinator_rows.append(
            [
                _fmt(row.coordinator_name),
                row.total_teachers,
                row.observed_count,
                _fmt(row.compliance_rate, "%"),
                row.pending_names or "-",
            ]
        )
    if len(coordinator_rows) == 1:
        coordinator_rows.append(["-", "0", "0", "0%", "-"])
    elements.append(_styled_table(coordinator_rows, col_widths=[130, 55, 55, 50, 240]))
    elements.append(Spacer(1, 10))

    if trend:
        elements.append(Paragraph("Compliance Trend", section_style))
        elements.append(RLImage(create_trend_chart(trend), width=500, height=220))
        elements.append(Spacer(1, 10))

    if unassigned:
        elements.append(Paragraph("Unassigned Teachers", section_style))
        unassigned_rows = [["Teacher", "School", "Tenure"]]
        for teacher in unassigned:
            unassigned_rows.append(
                [_fmt(teacher.get("full_name")), _fmt(teacher.get("school_id")), _fmt(teacher.get("tenure_status"))]
            )
        elements.append(_styled_table(unassigned_rows, col_widths=[250, 160, 120]))

    doc.build(elements)
    pdf_value = buffer.getvalue()
    buffer.close()
    return pdf_value


def generate_compliance_excel(summary: ComplianceSummary, trend: List[TrendPoint]) -> bytes:
    buffer = io.BytesIO()
    summary_df = pd.DataFrame([
        {
            "Week": summary.week.label if summary.week else None,
            "Fortnight": summary.fortnight.label if summary.fortnight else None,
            "Coordinators": summary.total_coordinators,
            "Teachers": summary.total_teachers,
            "Observed": summary.observed_count,
            "Compliance %": summary.overall_compliance_rate,
        }
    ])
    coordinators_df = pd.DataFrame(
        [
            {
                "Coordinator": row.coordinator_name,
                "Email": row.coordinator_email,
                "Teachers": row.total_teachers,
                "Observed": row.observed_count,
                "Compliance %": row.compliance_rate,
                "Status": row.status,
                "Pending": row.pending_names,
            }
            for row in summary.coordinators
        ],
        columns=["Coordinator", "Email", "Teachers", "Observed", "Compliance %", "Status", "Pending"],
    )
    trend_df = pd.DataFrame(
        [
            {
                "Period": point.full_label,
                "Dates": point.date_range,
                "Compliance %": (point.values or {}).get("compliance_rate"),
                "Status": (point.values or {}).get("status", "no_data"),
            }
            for point in trend
        ],
        columns=["Period", "Dates", "Compliance %", "Status"],
    )
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        summary_df.to_excel(writer, sheet_name="Summary", index=False)
        coordinators_df.to_excel(writer, sheet_name="Coordinators", index=False)
        trend_df.to_excel(writer, sheet_name="Trend", index=False)
    buffer.seek(0)
    return buffer.getvalue()
