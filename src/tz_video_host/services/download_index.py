"""JSON persistence for download records.

Loading is tolerant: malformed entries are skipped and a corrupt file
yields an empty index rather than blocking startup.
"""

from __future__ import annotations

import base64
import json
import logging
from contextlib import suppress
from pathlib import Path
from typing import Any
from uuid import uuid4

from tz_video_host.services.download_registry import (
    DownloadRecord,
    DownloadRequest,
    DownloadState,
)

logger = logging.getLogger(__name__)


def _record_to_json(record: DownloadRecord) -> dict[str, Any]:
    request = record.request
    return {
        "id": request.id,
        "uri": request.uri,
        "data": base64.b64encode(request.data).decode("ascii"),
        "stream_keys": [list(key) for key in request.stream_keys],
        "local_path": request.local_path,
        "state": record.state.value,
        "percent": record.percent,
    }


def _record_from_json(data: Any) -> DownloadRecord | None:
    if not isinstance(data, dict):
        return None
    request_id = data.get("id")
    uri = data.get("uri")
    if not isinstance(request_id, str) or not isinstance(uri, str):
        return None
    try:
        state = DownloadState(data.get("state"))
        payload = base64.b64decode(data.get("data") or "")
        stream_keys = tuple(
            (int(key[0]), int(key[1]), int(key[2]))
            for key in data.get("stream_keys") or []
        )
    except (ValueError, TypeError, IndexError):
        return None
    # A transfer cannot resume mid-flight across restarts; requeue it.
    if state is DownloadState.DOWNLOADING:
        state = DownloadState.QUEUED
    percent = data.get("percent")
    local_path = data.get("local_path")
    return DownloadRecord(
        request=DownloadRequest(
            id=request_id,
            uri=uri,
            data=payload,
            stream_keys=stream_keys,
            local_path=local_path if isinstance(local_path, str) else None,
        ),
        state=state,
        percent=float(percent) if isinstance(percent, (int, float)) else None,
    )


def load_index(path: Path) -> list[DownloadRecord]:
    """Load persisted records, skipping anything unreadable."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return []
    except OSError as exc:
        logger.warning("Failed to read download index %s: %s", path, exc)
        return []
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Download index at %s is invalid JSON; ignoring.", path)
        return []
    if not isinstance(data, list):
        logger.warning("Download index at %s is not a JSON list; ignoring.", path)
        return []
    records = []
    for entry in data:
        record = _record_from_json(entry)
        if record is None:
            logger.warning("Skipping malformed download index entry in %s", path)
            continue
        if record.state is DownloadState.REMOVING:
            continue
        records.append(record)
    return records


def save_index(path: Path, records: list[DownloadRecord]) -> None:
    """Persist records atomically via write-then-replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.{uuid4().hex}.tmp")
    payload = json.dumps(
        [_record_to_json(record) for record in records], indent=2, sort_keys=True
    )
    try:
        tmp_path.write_text(payload, encoding="utf-8")
        tmp_path.replace(path)
    finally:
        with suppress(OSError):
            tmp_path.unlink()
