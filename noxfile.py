"""Nox sessions for the tz-video-host quality gates."""

from __future__ import annotations

import nox

nox.options.sessions = ["lint", "typecheck", "tests"]

SOURCES = ("src", "tests", "noxfile.py")


@nox.session
def lint(session: nox.Session) -> None:
    """Check lint and formatting without touching files."""
    session.install("ruff")
    session.run("ruff", "check", *SOURCES)
    session.run("ruff", "format", "--check", *SOURCES)


@nox.session(name="lint-fix")
def lint_fix(session: nox.Session) -> None:
    session.install("ruff")
    session.run("ruff", "check", "--fix", *SOURCES)
    session.run("ruff", "format", *SOURCES)


@nox.session
def typecheck(session: nox.Session) -> None:
    """Type-check the package against its installed runtime dependencies."""
    session.install("mypy")
    session.install("-e", ".")
    session.run("mypy", "src/tz_video_host")


@nox.session
def tests(session: nox.Session) -> None:
    """Run the pytest suite; extra arguments are passed through."""
    session.install("-e", ".[test]")
    session.run("pytest", "-q", *session.posargs)


@nox.session
def doctor(session: nox.Session) -> None:
    """Install the host and print its environment report for the fake engine."""
    session.install("-e", ".")
    session.run("tz-video-host", "--doctor", "--engine", "fake")


@nox.session(python=False)
def local(session: nox.Session) -> None:
    """Run the gates with tools from the current environment."""
    session.run("ruff", "check", "--fix", *SOURCES, external=True)
    session.run("ruff", "format", *SOURCES, external=True)
    session.run("mypy", "src/tz_video_host", external=True)
    session.run("pytest", "-q", *session.posargs, external=True)
