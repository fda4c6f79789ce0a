"""OCR backends turning scanned route PDFs into plain text."""

from __future__ import annotations

import importlib.util
import logging
import shutil
import time
from typing import Any, Optional, Protocol

from .retry import RetryPolicy, call_with_retry
from .sources import LocalDocumentStore
from .utils import GOOGLE_DOC_MIME

log = logging.getLogger(__name__)


class OcrService(Protocol):
    def convert(self, file_id: str) -> str: ...


# ---------------------------------------------------------------------------
# Google Drive OCR
# ---------------------------------------------------------------------------


class DriveOcrService:
    """OCR by copying a PDF into a Google Doc and exporting it as text.

    The temporary Google Doc is deleted after the export.
    """

    def __init__(self, service, *, language: str = "en", policy: RetryPolicy | None = None):
        self.service = service
        self.language = language
        self.policy = policy or RetryPolicy()

    def convert(self, file_id: str) -> str:
        t0 = time.time()
        copy = call_with_retry(
            self.service.files()
            .copy(
                fileId=file_id,
                body={"mimeType": GOOGLE_DOC_MIME, "name": f"ocr-tmp-{file_id}"},
                ocrLanguage=self.language,
                fields="id",
                supportsAllDrives=True,
            )
            .execute,
            description="drive.files.copy(ocr)",
            policy=self.policy,
        )
        copy_id = copy["id"]
        try:
            data = call_with_retry(
                self.service.files().export(fileId=copy_id, mimeType="text/plain").execute,
                description="drive.files.export",
                policy=self.policy,
            )
        finally:
            try:
                call_with_retry(
                    self.service.files().delete(fileId=copy_id, supportsAllDrives=True).execute,
                    description="drive.files.delete",
                    policy=self.policy,
                )
            except Exception as exc:
                log.warning("Could not delete OCR copy %s: %s", copy_id, exc)

        text = data.decode("utf-8-sig") if isinstance(data, bytes) else str(data or "")
        log.info("OCR %s: %s chars in %.2fs", file_id, len(text), time.time() - t0)
        return text


# ---------------------------------------------------------------------------
# Local OCR with Docling
# ---------------------------------------------------------------------------


def create_ocr_converter(
    *,
    num_threads: int = 4,
    enable_ocr: bool = True,
) -> tuple[Any, str]:
    """Build a Docling ``DocumentConverter`` with the OCR pipeline.

    Returns:
        (converter, ocr_engine) where ``ocr_engine`` is a best-effort profile.
    """
    t0 = time.time()
    from docling.datamodel.accelerator_options import AcceleratorOptions
    from docling.datamodel.base_models import InputFormat
    from docling.datamodel.pipeline_options import (
        EasyOcrOptions,
        OcrAutoOptions,
        PdfPipelineOptions,
        TesseractOcrOptions,
    )
    from docling.document_converter import DocumentConverter, PdfFormatOption

    accelerator_options = AcceleratorOptions(num_threads=max(1, num_threads))
    has_easyocr = importlib.util.find_spec("easyocr") is not None
    has_tesseract = shutil.which("tesseract") is not None

    if enable_ocr:
        if has_easyocr:
            ocr_options, ocr_engine = EasyOcrOptions(), "easyocr"
        elif has_tesseract:
            ocr_options, ocr_engine = TesseractOcrOptions(), "tesseract"
        else:
            ocr_options, ocr_engine = OcrAutoOptions(), "auto"
        pipeline_options = PdfPipelineOptions(
            do_ocr=True,
            ocr_options=ocr_options,
            accelerator_options=accelerator_options,
        )
    else:
        ocr_engine = "disabled"
        pipeline_options = PdfPipelineOptions(
            do_ocr=False,
            accelerator_options=accelerator_options,
        )

    converter = DocumentConverter(
        format_options={
            InputFormat.PDF: PdfFormatOption(pipeline_options=pipeline_options),
        }
    )
    log.info(
        "Docling OCR converter initialized (%s) in %.2fs",
        ocr_engine,
        time.time() - t0,
    )
    return converter, ocr_engine


class DoclingOcrService:
    """OCR for PDFs in a :class:`LocalDocumentStore` using Docling."""

    def __init__(self, store: LocalDocumentStore, converter: Optional[Any] = None) -> None:
        self.store = store
        self._converter = converter

    @property
    def converter(self) -> Any:
        if self._converter is None:
            self._converter, _ = create_ocr_converter()
        return self._converter

    def convert(self, file_id: str) -> str:
        path = self.store.path_for(file_id)
        t0 = time.time()
        result = self.converter.convert(source=str(path))
        text = result.document.export_to_markdown()
        log.info("OCR %s: %s chars in %.2fs", path.name, len(text), time.time() - t0)
        return text
