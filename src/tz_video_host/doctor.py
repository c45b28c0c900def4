"""Environment diagnostics for the video host (`tz-video-host --doctor`)."""

from __future__ import annotations

import importlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal
from uuid import uuid4

from .settings_store import load_settings_with_notice

DoctorStatus = Literal["ok", "missing", "error"]

_TOKENS: dict[str, str] = {"ok": "[OK]", "missing": "[MISS]", "error": "[ERR]"}


@dataclass(frozen=True)
class DoctorCheck:
    name: str
    status: DoctorStatus
    required: bool
    detail: str
    hint: str | None = None

    @property
    def blocking(self) -> bool:
        return self.required and self.status != "ok"


@dataclass(frozen=True)
class DoctorReport:
    engine: str
    checks: list[DoctorCheck] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        """2 when a check the selected engine depends on did not pass."""
        return 2 if any(check.blocking for check in self.checks) else 0


def run_doctor(
    engine: str,
    *,
    settings_file: Path | None = None,
    downloads: Path | None = None,
) -> DoctorReport:
    checks = [probe_platformdirs()]
    if downloads is not None:
        checks.append(probe_downloads_dir(downloads))
    if settings_file is not None:
        checks.append(probe_settings(settings_file))
    checks.append(probe_vlc(required=engine == "vlc"))
    return DoctorReport(engine=engine, checks=checks)


def render_report(report: DoctorReport) -> str:
    lines = [f"tz-video-host doctor (engine={report.engine})", ""]
    for check in report.checks:
        scope = "required" if check.required else "optional"
        lines.append(
            f"{_TOKENS[check.status]} {check.name:<14} [{scope}] {check.detail}"
        )
        if check.hint:
            lines.append(f"      hint: {check.hint}")
    lines += ["", "Result: FAIL" if report.exit_code else "Result: OK"]
    return "\n".join(lines)


def probe_platformdirs() -> DoctorCheck:
    try:
        module = importlib.import_module("platformdirs")
    except ImportError as exc:
        return DoctorCheck(
            "platformdirs",
            "missing",
            True,
            f"not importable ({type(exc).__name__})",
            hint="Reinstall tz-video-host so its dependencies are present.",
        )
    version = getattr(module, "__version__", None)
    return DoctorCheck(
        "platformdirs", "ok", True, f"version {version}" if version else "importable"
    )


def probe_downloads_dir(directory: Path) -> DoctorCheck:
    """Offline copies and the download index need a writable data directory."""
    probe = directory / f".doctor-{uuid4().hex}"
    try:
        directory.mkdir(parents=True, exist_ok=True)
        probe.write_text("", encoding="utf-8")
        probe.unlink()
    except OSError as exc:
        return DoctorCheck(
            "downloads",
            "error",
            True,
            f"{directory} not writable ({type(exc).__name__})",
            hint="Fix permissions on the per-user data directory.",
        )
    return DoctorCheck("downloads", "ok", True, str(directory))


def probe_settings(path: Path) -> DoctorCheck:
    settings, notice = load_settings_with_notice(path)
    if notice is not None:
        return DoctorCheck(
            "settings",
            "error",
            False,
            f"{path} unusable; defaults in effect",
            hint=notice.splitlines()[-1],
        )
    source = str(path) if path.exists() else "defaults (no settings file)"
    return DoctorCheck(
        "settings", "ok", False, f"{source}; engine={settings.engine}"
    )


def probe_vlc(*, required: bool) -> DoctorCheck:
    """python-vlc must import and libVLC must be able to open network media."""
    try:
        vlc = importlib.import_module("vlc")
    except Exception as exc:
        return DoctorCheck(
            "vlc/libvlc",
            "missing",
            required,
            f"python-vlc import failed ({type(exc).__name__})",
            hint="Install VLC/libVLC and ensure python-vlc can locate libVLC.",
        )
    binding = getattr(vlc, "__version__", "unknown")
    try:
        instance = vlc.Instance("--no-video-title-show")
        player = instance.media_player_new()
        instance.media_new("https://localhost/doctor.m3u8")
        player.release()
    except Exception as exc:
        return DoctorCheck(
            "vlc/libvlc",
            "error",
            required,
            f"python-vlc {binding}; libVLC unusable ({type(exc).__name__})",
            hint="Verify the libVLC plugin path and runtime library search path.",
        )
    return DoctorCheck(
        "vlc/libvlc",
        "ok",
        required,
        f"python-vlc {binding}; libVLC {_libvlc_version(vlc)}",
    )


def _libvlc_version(vlc: object) -> str:
    getter = getattr(vlc, "libvlc_get_version", None)
    if not callable(getter):
        return "detected"
    try:
        release = getter()
    except Exception:
        return "detected"
    if isinstance(release, bytes):
        release = release.decode("utf-8", errors="replace")
    return str(release) or "detected"
