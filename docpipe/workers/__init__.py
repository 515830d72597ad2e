from docpipe.workers.actions import ActionsWorker
from docpipe.workers.base import StageWorker
from docpipe.workers.classify import ClassifyWorker
from docpipe.workers.extract import ExtractWorker
from docpipe.workers.intake import IntakeWorker
from docpipe.workers.ocr import OcrWorker
from docpipe.workers.reconcile import ReconcileWorker

WORKER_CLASSES: dict[str, type[StageWorker]] = {
    "intake": IntakeWorker,
    "ocr": OcrWorker,
    "classify": ClassifyWorker,
    "extract": ExtractWorker,
    "reconcile": ReconcileWorker,
    "actions": ActionsWorker,
}

__all__ = [
    "ActionsWorker",
    "ClassifyWorker",
    "ExtractWorker",
    "IntakeWorker",
    "OcrWorker",
    "ReconcileWorker",
    "StageWorker",
    "WORKER_CLASSES",
]
