"""Nox sessions for extcall development."""

from __future__ import annotations

import nox

nox.options.sessions = ["fmt", "lint", "typecheck", "tests"]
nox.options.reuse_existing_virtualenvs = True

PYTHON = "3.11"
SRC = "src/extcall"
TESTS = "tests"


@nox.session(python=False)
def fmt(session: nox.Session) -> None:
    """Run ruff formatter."""
    session.run("ruff", "format", SRC, TESTS, "noxfile.py")


@nox.session(python=False)
def lint(session: nox.Session) -> None:
    """Run ruff linter."""
    session.run("ruff", "check", SRC, TESTS, "--fix")


@nox.session(python=False)
def typecheck(session: nox.Session) -> None:
    """Run mypy on the package."""
    session.run("mypy", SRC)


@nox.session(python=False)
def tests(session: nox.Session) -> None:
    """Run pytest; child programs are spawned for real."""
    args = session.posargs or [TESTS]
    session.run("pytest", *args)


@nox.session(python=False)
def doctor(session: nox.Session) -> None:
    """Check that the configured external programs resolve."""
    session.run("extcall", "doctor")
