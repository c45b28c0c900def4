"""Resolve a requested URI into a playable source description.

A completed offline copy always wins over the network. Otherwise the
container type is inferred from the URI path (query-string format hints
break ties) and paired with a local or HTTP data source factory.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Literal
from urllib.parse import parse_qs, unquote, urlsplit

from tz_video_host.errors import UnsupportedSourceError
from tz_video_host.services.download_registry import (
    DownloadRegistry,
    DownloadRequest,
    DownloadState,
)

logger = logging.getLogger(__name__)

LOCAL_SCHEMES = frozenset({"file", "asset"})
PROGRESSIVE_SCHEMES = frozenset({"http", "https", "file", "asset", "content"})
_SMOOTH_STREAMING_PATH = re.compile(r".*\.isml?(?:/(?:manifest(?:\(.+\))?)?)?$")


class ContentType(Enum):
    SMOOTH_STREAMING = "ss"
    DASH = "dash"
    HLS = "hls"
    OTHER = "other"


class SourceKind(Enum):
    SMOOTH_STREAMING = "smooth_streaming"
    DASH = "dash"
    HLS = "hls"
    PROGRESSIVE = "progressive"
    OFFLINE = "offline"


_KIND_BY_TYPE = {
    ContentType.SMOOTH_STREAMING: SourceKind.SMOOTH_STREAMING,
    ContentType.DASH: SourceKind.DASH,
    ContentType.HLS: SourceKind.HLS,
    ContentType.OTHER: SourceKind.PROGRESSIVE,
}


@dataclass(frozen=True)
class DataSourceFactory:
    kind: Literal["local", "http", "cache"]
    user_agent: str = "tz-video-host"
    allow_cross_protocol_redirects: bool = False


@dataclass(frozen=True)
class PlayableSource:
    uri: str
    kind: SourceKind
    data_source_factory: DataSourceFactory
    download_request: DownloadRequest | None = None
    local_path: str | None = None


def infer_content_type(uri: str) -> ContentType:
    parts = urlsplit(uri)
    path = (parts.path or "").lower()
    if path.endswith(".mpd"):
        return ContentType.DASH
    if path.endswith(".m3u8"):
        return ContentType.HLS
    if _SMOOTH_STREAMING_PATH.match(path):
        return ContentType.SMOOTH_STREAMING
    formats = [value.lower() for value in parse_qs(parts.query).get("format", [])]
    if "mpd-time-csf" in formats:
        return ContentType.DASH
    if "m3u8-aapl" in formats:
        return ContentType.HLS
    return ContentType.OTHER


def uri_scheme(uri: str) -> str:
    return urlsplit(uri).scheme.lower()


def is_file_or_asset(uri: str) -> bool:
    return uri_scheme(uri) in LOCAL_SCHEMES


def asset_uri(asset: str, package: str | None = None) -> str:
    """Build the `asset:///` URI for a bundled asset, optionally package-scoped."""
    asset = asset.lstrip("/")
    if package:
        return f"asset:///packages/{package}/assets/{asset}"
    return f"asset:///assets/{asset}"


def local_path_for(uri: str, asset_root: Path | None = None) -> str | None:
    """Map `file://` and `asset:///` URIs to filesystem paths."""
    parts = urlsplit(uri)
    scheme = parts.scheme.lower()
    if scheme == "file":
        return unquote(parts.path)
    if scheme == "asset":
        key = unquote(parts.path).lstrip("/")
        root = asset_root if asset_root is not None else Path.cwd()
        return str(root / key)
    return None


class SourceResolver:
    """Builds `PlayableSource` values from URIs and the download registry."""

    def __init__(
        self,
        *,
        user_agent: str = "tz-video-host",
        allow_cross_protocol_redirects: bool = True,
        asset_root: Path | None = None,
    ) -> None:
        self._user_agent = user_agent
        self._allow_cross_protocol_redirects = allow_cross_protocol_redirects
        self._asset_root = asset_root

    def data_source_factory_for(self, uri: str) -> DataSourceFactory:
        if is_file_or_asset(uri):
            return DataSourceFactory("local", user_agent=self._user_agent)
        return DataSourceFactory(
            "http",
            user_agent=self._user_agent,
            allow_cross_protocol_redirects=self._allow_cross_protocol_redirects,
        )

    def resolve(self, uri: str, registry: DownloadRegistry) -> PlayableSource:
        if is_file_or_asset(uri):
            return self._build(uri, infer_content_type(uri))
        record = registry.get_download(uri)
        if record is not None and record.state is DownloadState.COMPLETED:
            logger.info("Using offline copy for %s", uri)
            return PlayableSource(
                uri=uri,
                kind=SourceKind.OFFLINE,
                data_source_factory=DataSourceFactory(
                    "cache", user_agent=self._user_agent
                ),
                download_request=record.request,
                local_path=record.request.local_path,
            )
        return self._build(uri, infer_content_type(uri))

    def _build(self, uri: str, content_type: ContentType) -> PlayableSource:
        scheme = uri_scheme(uri)
        if content_type is ContentType.OTHER and scheme not in PROGRESSIVE_SCHEMES:
            raise UnsupportedSourceError(
                f"Unsupported source {uri!r}: cannot infer a playable content type"
            )
        return PlayableSource(
            uri=uri,
            kind=_KIND_BY_TYPE[content_type],
            data_source_factory=self.data_source_factory_for(uri),
            local_path=local_path_for(uri, self._asset_root),
        )
