import nox

nox.options.sessions = ["format", "lint", "typecheck", "test"]
nox.options.reuse_existing_virtualenvs = False
nox.options.default_venv_backend = "uv"

SOURCES = "services/oauth_hub"


@nox.session(python="3.12")
def fix(session: nox.Session) -> None:
    """Format and fix code issues."""
    session.install("black", "isort", "ruff")
    session.run("black", SOURCES)
    session.run("isort", SOURCES)
    session.run("ruff", "check", "--fix", SOURCES)


@nox.session(python="3.12")
def format(session: nox.Session) -> None:
    """Check code formatting."""
    session.install("black", "isort")
    session.run("black", "--check", "--diff", SOURCES)
    session.run("isort", "--check-only", "--diff", SOURCES)


@nox.session(python="3.12")
def lint(session: nox.Session) -> None:
    """Run linting."""
    session.install("ruff")
    session.run("ruff", "check", SOURCES)


@nox.session(python="3.12")
def typecheck(session: nox.Session) -> None:
    """Run type checking."""
    session.install("mypy")
    session.install("-e", ".[test]")
    session.run("mypy", SOURCES)


@nox.session(python="3.12")
def test(session: nox.Session) -> None:
    """Run the OAuth hub test suite."""
    session.install("-e", ".[test]")
    session.run("pytest", SOURCES, "-v", "-r", "fE", *session.posargs)


@nox.session(python="3.12")
def test_cov(session: nox.Session) -> None:
    """Run tests with coverage."""
    session.install("-e", ".[test]", "pytest-cov")
    session.run(
        "pytest",
        SOURCES,
        f"--cov={SOURCES}",
        "--cov-report=xml:coverage.xml",
        "-r",
        "fE",
    )
