"""Work-order document rendering.

Architecture:
    - HTML template → WeasyPrint → PDF bytes
    - Rendering runs in a worker thread; WeasyPrint is synchronous.

The document carries the signed completion link in plain text. Rendering is
a collaborator of the engine: a failure here is logged by the caller and
never blocks the task card from being posted.
"""

from __future__ import annotations

import asyncio
import html
import re
from dataclasses import dataclass

import structlog

logger = structlog.get_logger()

_SAFE_RE = re.compile(r"[^\w\-]+")

_PDF_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
<style>
  @page {{ size: Letter; margin: 0.5in; }}
  body {{ font-family: Helvetica, Arial, sans-serif; font-size: 11pt; color: #000; }}
  h1 {{ text-align: center; font-size: 20pt; margin-bottom: 2px; }}
  .generated {{ text-align: center; color: #666; font-size: 9pt; margin-bottom: 18px; }}
  table {{ border-collapse: collapse; }}
  th {{ text-align: left; padding: 3px 12px 3px 0; }}
  h2 {{ font-size: 12pt; margin-top: 16px; }}
  .note {{ white-space: pre-wrap; }}
  .hint {{ color: #555; font-size: 9pt; }}
  .link {{ color: #777; font-size: 8pt; word-break: break-all; }}
</style>
</head>
<body>
<h1>Work Order</h1>
<div class="generated">{generated}</div>
<table>
  <tr><th>Task</th><td>{subject}</td></tr>
  <tr><th>Due</th><td>{due}</td></tr>
  <tr><th>Crew</th><td>{crew}</td></tr>
  <tr><th>Deal</th><td>{deal}</td></tr>
  <tr><th>Type of Service</th><td>{service}</td></tr>
  <tr><th>Location</th><td>{location}</td></tr>
</table>
{note_section}
<h2>Complete this task</h2>
<p class="hint">Opening this link marks the task complete in Pipedrive and posts a confirmation in Slack.</p>
<p class="link">{complete_url}</p>
</body>
</html>"""


@dataclass(frozen=True)
class WorkOrder:
    """Everything a task card or work-order document shows."""

    activity_id: str
    subject: str
    due: str
    deal_id: str
    deal_title: str
    service: str
    location: str
    crew: str
    note: str
    complete_url: str
    generated: str = ""

    @property
    def filename(self) -> str:
        return work_order_filename(self.deal_title, self.subject)


def _safe(part: str) -> str:
    return _SAFE_RE.sub("_", part or "")[:60]


def work_order_filename(deal_title: str, subject: str) -> str:
    return f"WO_{_safe(deal_title)}_{_safe(subject)}.pdf"


def build_work_order_html(order: WorkOrder) -> str:
    esc = html.escape
    note_section = ""
    if order.note:
        note_section = f'<h2>Scope / Notes</h2>\n<div class="note">{esc(order.note)}</div>'
    return _PDF_TEMPLATE.format(
        generated=esc(order.generated),
        subject=esc(order.subject or "-"),
        due=esc(order.due or "-"),
        crew=esc(order.crew or "Unassigned"),
        deal=esc(f"{order.deal_id} - {order.deal_title}" if order.deal_id else "-"),
        service=esc(order.service or "-"),
        location=esc(order.location or "-"),
        note_section=note_section,
        complete_url=esc(order.complete_url),
    )


class WorkOrderRenderer:
    async def render(self, order: WorkOrder) -> bytes:
        """Render ``order`` to PDF bytes. Raises RuntimeError on failure."""
        try:
            from weasyprint import HTML
        except ImportError as e:
            raise RuntimeError("PDF rendering is unavailable: weasyprint not installed") from e

        document = build_work_order_html(order)
        try:
            pdf = await asyncio.to_thread(lambda: HTML(string=document).write_pdf())
        except Exception as e:
            logger.error("pdf_generation_failed", activity_id=order.activity_id, error=str(e))
            raise RuntimeError(f"PDF generation failed for activity {order.activity_id}") from e

        logger.info(
            "pdf_generated",
            activity_id=order.activity_id,
            size_kb=round(len(pdf) / 1024, 1),
        )
        return pdf
