"""Paginated PDF report for one RoundLog, drawn with reportlab on A4.

Layout (top to bottom): coloured header band with title, optional logo and
token; task fields; checklist with pass/fail marks; observations; signature
image or an explicit "not signed" notice; validation token footer. A new
page starts whenever the cursor reaches the bottom margin.
"""

from __future__ import annotations

import io
import logging
import re
from datetime import UTC, datetime, tzinfo

from reportlab.lib.colors import Color, HexColor
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader, simpleSplit
from reportlab.pdfgen import canvas

from .images import decode_data_url
from .models import ReportConfig, RoundLog
from .records import format_duration

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Relatório de Ronda"
SUBTITLE = "Relatório de Execução de Ronda"
NOT_SIGNED_NOTICE = "[Não Assinado Digitalmente]"
SIGNATURE_ERROR_NOTICE = "[Erro ao renderizar imagem da assinatura]"
NO_OBSERVATIONS = "Nenhuma observação registrada."
FOOTER_NOTICE = "Documento gerado eletronicamente pelo sistema RondaGuard Pro."

PAGE_WIDTH, PAGE_HEIGHT = A4
MARGIN_X = 20 * mm
CONTENT_WIDTH = 170 * mm
HEADER_HEIGHT = 40 * mm
BOTTOM_MARGIN = 40 * mm
PAGE_TOP = 20 * mm

TEXT_COLOR = Color(60 / 255, 60 / 255, 60 / 255)
FAIL_COLOR = Color(200 / 255, 0, 60 / 255)
MUTED_COLOR = Color(100 / 255, 100 / 255, 100 / 255)
FAINT_COLOR = Color(150 / 255, 150 / 255, 150 / 255)
RULE_COLOR = Color(200 / 255, 200 / 255, 200 / 255)


class _Cursor:
    """Top-down writing position; ``y`` is the distance from the page top."""

    def __init__(self, pdf: canvas.Canvas) -> None:
        self.pdf = pdf
        self.y = HEADER_HEIGHT + 10 * mm
        self.pages = 1

    def new_page(self) -> None:
        self.pdf.showPage()
        self.pages += 1
        self.y = PAGE_TOP

    def text(self, value: str, *, x: float = MARGIN_X) -> None:
        self.pdf.drawString(x, PAGE_HEIGHT - self.y, value)

    def rule(self) -> None:
        self.pdf.setStrokeColor(RULE_COLOR)
        self.pdf.line(MARGIN_X, PAGE_HEIGHT - self.y, MARGIN_X + CONTENT_WIDTH, PAGE_HEIGHT - self.y)


def render_round_report(
    log: RoundLog,
    config: ReportConfig | None = None,
    *,
    tz: tzinfo = UTC,
) -> bytes:
    config = config or ReportConfig()
    buffer = io.BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=A4)
    pdf.setTitle(f"Ronda {log.task_title}")
    cursor = _Cursor(pdf)

    _draw_header(pdf, log, config)
    _draw_fields(cursor, log, tz)
    _draw_checklist(cursor, log)
    _draw_observations(cursor, log)
    _draw_signature(cursor, log)

    pdf.save()
    logger.info(
        "round_report event=rendered round_id=%s pages=%s signed=%s",
        log.id,
        cursor.pages,
        log.signature is not None,
    )
    return buffer.getvalue()


def report_filename(log: RoundLog, *, tz: tzinfo = UTC) -> str:
    day = _as_datetime(log.start_time, tz).strftime("%Y-%m-%d")
    title = re.sub(r"[^\w.-]+", "_", log.task_title, flags=re.UNICODE).strip("_") or "ronda"
    return f"Ronda_{title}_{day}.pdf"


def _draw_header(pdf: canvas.Canvas, log: RoundLog, config: ReportConfig) -> None:
    pdf.setFillColor(HexColor(config.header_color))
    pdf.rect(0, PAGE_HEIGHT - HEADER_HEIGHT, PAGE_WIDTH, HEADER_HEIGHT, stroke=0, fill=1)

    if config.logo:
        try:
            _, raw = decode_data_url(config.logo)
            pdf.drawImage(
                ImageReader(io.BytesIO(raw)),
                170 * mm,
                PAGE_HEIGHT - 35 * mm,
                width=30 * mm,
                height=30 * mm,
                preserveAspectRatio=True,
                mask="auto",
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("round_report event=logo_failed round_id=%s error=%s", log.id, exc)

    pdf.setFillColorRGB(1, 1, 1)
    pdf.setFont("Helvetica", 22)
    pdf.drawString(MARGIN_X, PAGE_HEIGHT - 20 * mm, config.company_name or DEFAULT_TITLE)
    if config.company_name:
        pdf.setFont("Helvetica", 12)
        pdf.drawString(MARGIN_X, PAGE_HEIGHT - 30 * mm, SUBTITLE)
    pdf.setFont("Helvetica", 10)
    pdf.drawString(MARGIN_X, PAGE_HEIGHT - 38 * mm, f"Token: {log.validation_token}")


def _draw_fields(cursor: _Cursor, log: RoundLog, tz: tzinfo) -> None:
    pdf = cursor.pdf
    started = _as_datetime(log.start_time, tz)
    ended = _as_datetime(log.end_time, tz)

    pdf.setFillColor(TEXT_COLOR)
    pdf.setFont("Helvetica-Bold", 12)
    cursor.text(f"Atividade: {log.task_title}")
    cursor.y += 10 * mm
    pdf.setFont("Helvetica", 12)
    cursor.text(f"Setor: {log.sector}")
    cursor.text(f"Data: {started.strftime('%d/%m/%Y')}", x=120 * mm)
    if log.ticket_id:
        cursor.y += 10 * mm
        cursor.text(f"Nº Chamado: {log.ticket_id}")
    cursor.y += 10 * mm
    cursor.text(f"Responsável: {log.responsible or 'N/A'}")
    cursor.y += 10 * mm
    cursor.text(f"Início: {started.strftime('%H:%M:%S')}")
    cursor.text(f"Fim: {ended.strftime('%H:%M:%S')}", x=80 * mm)
    cursor.text(f"Duração: {format_duration(log.duration_seconds)}", x=140 * mm)
    cursor.y += 20 * mm
    cursor.rule()
    cursor.y += 10 * mm


def _draw_checklist(cursor: _Cursor, log: RoundLog) -> None:
    pdf = cursor.pdf
    pdf.setFillColor(TEXT_COLOR)
    pdf.setFont("Helvetica-Bold", 12)
    cursor.text("Checklist de Verificação:")
    cursor.y += 10 * mm
    for item in log.checklist_state:
        status = "[ OK ]" if item.checked else "[ ERRO ]"
        for line in simpleSplit(f"{status} {item.label}", "Helvetica", 12, CONTENT_WIDTH):
            if cursor.y > PAGE_HEIGHT - BOTTOM_MARGIN:
                cursor.new_page()
            pdf.setFont("Helvetica", 12)
            pdf.setFillColor(TEXT_COLOR if item.checked else FAIL_COLOR)
            cursor.text(line)
            cursor.y += 8 * mm


def _draw_observations(cursor: _Cursor, log: RoundLog) -> None:
    pdf = cursor.pdf
    if cursor.y > PAGE_HEIGHT - BOTTOM_MARGIN:
        cursor.new_page()
    pdf.setFillColor(TEXT_COLOR)
    pdf.setFont("Helvetica-Bold", 12)
    cursor.text("Observações & Ocorrências:")
    cursor.y += 10 * mm
    text = log.observations.strip() or NO_OBSERVATIONS
    for paragraph in text.splitlines() or [text]:
        for line in simpleSplit(paragraph, "Helvetica", 12, CONTENT_WIDTH) or [""]:
            if cursor.y > PAGE_HEIGHT - BOTTOM_MARGIN:
                cursor.new_page()
            pdf.setFillColor(TEXT_COLOR)
            pdf.setFont("Helvetica", 12)
            cursor.text(line)
            cursor.y += 7 * mm
    cursor.y += 10 * mm


def _draw_signature(cursor: _Cursor, log: RoundLog) -> None:
    pdf = cursor.pdf
    if cursor.y > PAGE_HEIGHT - 60 * mm:
        cursor.new_page()
    cursor.y += 10 * mm
    cursor.rule()
    cursor.y += 10 * mm

    pdf.setFont("Helvetica", 10)
    pdf.setFillColor(MUTED_COLOR)
    cursor.text("Assinatura do Responsável:")
    cursor.y += 5 * mm

    if log.signature:
        try:
            _, raw = decode_data_url(log.signature)
            height = 20 * mm
            pdf.drawImage(
                ImageReader(io.BytesIO(raw)),
                MARGIN_X,
                PAGE_HEIGHT - cursor.y - height,
                width=60 * mm,
                height=height,
            )
            cursor.y += 25 * mm
        except Exception as exc:  # noqa: BLE001
            logger.warning("round_report event=signature_failed round_id=%s error=%s", log.id, exc)
            cursor.y += 10 * mm
            cursor.text(SIGNATURE_ERROR_NOTICE)
            cursor.y += 5 * mm
    else:
        cursor.y += 10 * mm
        cursor.text(NOT_SIGNED_NOTICE)
        cursor.y += 5 * mm

    pdf.setFont("Helvetica", 8)
    pdf.setFillColor(FAINT_COLOR)
    cursor.text(f"Token de Validação Digital: {log.validation_token}")
    cursor.y += 4 * mm
    cursor.text(FOOTER_NOTICE)


def _as_datetime(epoch_ms: int, tz: tzinfo) -> datetime:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=tz)
