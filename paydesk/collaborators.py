"""External collaborators driven by the outbox relay.

None of these are ever called inside a transaction. HTTP implementations
raise ``DependencyError`` on transport or protocol failure; the relay logs
and retries later, committed case and payment state is never affected.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib import request
from urllib.error import URLError

from paydesk.config import Settings
from paydesk.errors import DependencyError

logger = logging.getLogger(__name__)

_SAFE_SEGMENT_RE = re.compile(r"[^A-Za-z0-9_.\-]+")


@dataclass(frozen=True)
class StoredDocument:
    file_id: str
    url: str


def _post_json(
    *,
    endpoint: str,
    payload: dict[str, Any],
    timeout_s: float,
    headers: dict[str, str] | None = None,
) -> dict[str, Any]:
    body = json.dumps(payload, ensure_ascii=True, sort_keys=True, default=str).encode("utf-8")
    req = request.Request(
        endpoint,
        data=body,
        method="POST",
        headers={"Content-Type": "application/json", **(headers or {})},
    )
    with request.urlopen(req, timeout=timeout_s) as resp:
        raw = resp.read().decode("utf-8")
    if not raw.strip():
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {"data": parsed}


class AppsScriptClient:
    """Posts JSON to a Google Apps Script web app guarded by ``X-SYNC-SECRET``."""

    def __init__(self, *, base_url: str, sync_secret: str, timeout_s: float = 10.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._sync_secret = sync_secret
        self._timeout_s = timeout_s

    def call(self, path: str, payload: dict[str, Any], *, collaborator: str) -> dict[str, Any]:
        try:
            data = _post_json(
                endpoint=f"{self._base_url}{path}",
                payload=payload,
                timeout_s=self._timeout_s,
                headers={"X-SYNC-SECRET": self._sync_secret},
            )
        except (TimeoutError, URLError, ValueError, OSError) as exc:
            raise DependencyError(f"apps script call failed: {exc}", collaborator=collaborator) from exc
        if data.get("success") is False:
            raise DependencyError(str(data.get("error") or "apps script rejected request"), collaborator=collaborator)
        return data


class DocumentStorage:
    name = "document_storage"

    def upload(self, *, content: bytes, filename: str, mime_type: str, folder_ref: str) -> StoredDocument:
        raise NotImplementedError


class LocalDocumentStorage(DocumentStorage):
    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    def upload(self, *, content: bytes, filename: str, mime_type: str, folder_ref: str) -> StoredDocument:
        folder = _SAFE_SEGMENT_RE.sub("_", folder_ref) or "unfiled"
        name = _SAFE_SEGMENT_RE.sub("_", filename) or "document"
        target_dir = self._root / folder
        file_id = f"doc_{uuid.uuid4().hex[:12]}"
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            target = target_dir / f"{file_id}_{name}"
            target.write_bytes(content)
        except OSError as exc:
            raise DependencyError(f"document write failed: {exc}", collaborator=self.name) from exc
        return StoredDocument(file_id=file_id, url=target.resolve().as_uri())


class AppsScriptDocumentStorage(DocumentStorage):
    def __init__(self, client: AppsScriptClient) -> None:
        self._client = client

    def upload(self, *, content: bytes, filename: str, mime_type: str, folder_ref: str) -> StoredDocument:
        data = self._client.call(
            "/upload",
            {
                "fileName": filename,
                "mimeType": mime_type,
                "folderId": folder_ref,
                "content": content.decode("utf-8", errors="replace"),
            },
            collaborator=self.name,
        )
        body = data.get("data") if isinstance(data.get("data"), dict) else data
        file_id = str(body.get("fileId") or "")
        if not file_id:
            raise DependencyError("upload response missing fileId", collaborator=self.name)
        return StoredDocument(file_id=file_id, url=str(body.get("url") or ""))


class Messenger:
    name = "messenger"

    def send(self, case_summary: dict[str, Any]) -> bool:
        raise NotImplementedError


def build_notification_message(case_summary: dict[str, Any]) -> str:
    lines = [
        f"[{case_summary.get('event_type', 'case.updated')}] {case_summary.get('case_no', '')}".strip(),
        f"Kind: {case_summary.get('kind', '-')}",
        f"Status: {case_summary.get('status', '-')} / payment {case_summary.get('payment_status', '-')}",
    ]
    if case_summary.get("amount") is not None:
        lines.append(f"Amount: {case_summary['amount']}")
    return "\n".join(lines)


class LoggingMessenger(Messenger):
    def __init__(self) -> None:
        self.sent: list[str] = []

    def send(self, case_summary: dict[str, Any]) -> bool:
        message = build_notification_message(case_summary)
        self.sent.append(message)
        logger.info("notification case_no=%s message=%r", case_summary.get("case_no"), message)
        return True


class WebhookMessenger(Messenger):
    def __init__(self, *, url: str, timeout_s: float = 10.0, max_retries: int = 3) -> None:
        self._url = url
        self._timeout_s = timeout_s
        self._max_retries = max(1, max_retries)

    def send(self, case_summary: dict[str, Any]) -> bool:
        payload = {"text": build_notification_message(case_summary), "case": case_summary}
        last_exc: Exception | None = None
        for attempt in range(1, self._max_retries + 1):
            try:
                _post_json(endpoint=self._url, payload=payload, timeout_s=self._timeout_s)
                return True
            except (TimeoutError, URLError, ValueError, OSError) as exc:
                last_exc = exc
                logger.warning("messenger attempt %s/%s failed: %s", attempt, self._max_retries, exc)
        raise DependencyError(f"notification failed: {last_exc}", collaborator=self.name)


class SheetMirror:
    name = "sheet_mirror"

    def push(self, row_ref: str, field_delta: dict[str, Any]) -> bool:
        raise NotImplementedError


@dataclass
class InMemorySheetMirror(SheetMirror):
    rows: dict[str, dict[str, Any]] = field(default_factory=dict)

    def push(self, row_ref: str, field_delta: dict[str, Any]) -> bool:
        self.rows.setdefault(row_ref, {}).update(field_delta)
        return True


class AppsScriptSheetMirror(SheetMirror):
    def __init__(self, client: AppsScriptClient) -> None:
        self._client = client

    def push(self, row_ref: str, field_delta: dict[str, Any]) -> bool:
        self._client.call("/case-updated", {"caseNo": row_ref, **field_delta}, collaborator=self.name)
        return True


@dataclass
class Collaborators:
    documents: DocumentStorage
    messenger: Messenger
    sheet: SheetMirror


def create_collaborators(settings: Settings) -> Collaborators:
    apps_script: AppsScriptClient | None = None
    if settings.apps_script_url:
        apps_script = AppsScriptClient(
            base_url=settings.apps_script_url,
            sync_secret=settings.sync_secret,
            timeout_s=settings.collaborator_timeout_s,
        )
    documents: DocumentStorage = (
        AppsScriptDocumentStorage(apps_script)
        if apps_script is not None
        else LocalDocumentStorage(settings.document_storage_root)
    )
    messenger: Messenger = (
        WebhookMessenger(url=settings.messaging_webhook_url, timeout_s=settings.collaborator_timeout_s)
        if settings.messaging_webhook_url
        else LoggingMessenger()
    )
    sheet: SheetMirror = AppsScriptSheetMirror(apps_script) if apps_script is not None else InMemorySheetMirror()
    return Collaborators(documents=documents, messenger=messenger, sheet=sheet)
