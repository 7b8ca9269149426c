"""
Document Status Adapter.

The approval engine does not own the documents it approves. When an
approval run starts or reaches a terminal state, the owning module is
told through this adapter:

    adapter.notify("PO", "PO-2026-0042", "approved")
    → {"success": True}

Statuses: in_approval, approved, rejected, cancelled.

Adapters are injected into the orchestrator (``create_app(document_status_adapter=...)``);
the default is the no-op adapter. A failing adapter never rolls back an
approval transition: errors are logged and reported in the result dict.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Callable

from app.models.approval import DOCUMENT_STATUSES

logger = logging.getLogger(__name__)


class DocumentStatusAdapter(ABC):
    """Interface the document modules implement."""

    @abstractmethod
    def notify(self, doc_type: str, doc_id: str, status: str) -> dict:
        """Push ``status`` to the document; return ``{"success": bool, ...}``."""


class NoopDocumentStatusAdapter(DocumentStatusAdapter):
    """Default adapter: acknowledges every call without side effects."""

    def notify(self, doc_type: str, doc_id: str, status: str) -> dict:
        logger.debug("Document status (noop): %s/%s → %s", doc_type, doc_id, status)
        return {"success": True, "mocked": True}


class RegistryDocumentStatusAdapter(DocumentStatusAdapter):
    """Routes each doc type to a handler callable ``handler(doc_id, status)``.

    Doc types without a handler are acknowledged as mocked. Handler
    exceptions are caught, logged and returned as ``success: False``.
    """

    def __init__(self, handlers: dict[str, Callable[[str, str], object]] | None = None) -> None:
        self._handlers: dict[str, Callable[[str, str], object]] = dict(handlers or {})

    def register(self, doc_type: str, handler: Callable[[str, str], object]) -> None:
        self._handlers[doc_type] = handler

    def notify(self, doc_type: str, doc_id: str, status: str) -> dict:
        if status not in DOCUMENT_STATUSES:
            logger.warning("Document status %r not recognised for %s/%s", status, doc_type, doc_id)
            return {"success": False, "error": f"Unknown status: {status}"}

        handler = self._handlers.get(doc_type)
        if handler is None:
            logger.debug("No document handler for %s; %s/%s → %s acknowledged",
                         doc_type, doc_type, doc_id, status)
            return {"success": True, "mocked": True}

        try:
            handler(doc_id, status)
        except Exception as exc:
            logger.exception("Document status update failed for %s/%s → %s",
                             doc_type, doc_id, status,
                             extra={"doc_type": doc_type, "doc_id": doc_id})
            return {"success": False, "error": str(exc)}
        logger.info("Document %s/%s status → %s", doc_type, doc_id, status,
                    extra={"doc_type": doc_type, "doc_id": doc_id})
        return {"success": True}
