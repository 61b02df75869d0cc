"""Nox configuration for Dynamo Cleanup development automation.

This file defines automated development tasks including linting, testing,
formatting and running the teardown itself.
"""

import nox

# Python versions to test against
PYTHON_VERSIONS = ["3.11"]

# Default sessions to run when no specific session is requested
nox.options.sessions = ["lint", "test", "coverage"]


@nox.session(python=PYTHON_VERSIONS)
def lint(session):
    """Run linting with ruff and mypy."""
    session.install("poetry")
    session.run("poetry", "install", "--extras", "test")

    session.run("poetry", "run", "ruff", "check", "src", "tests")
    session.run("poetry", "run", "mypy", "src")

    session.log("✅ Linting completed successfully")


@nox.session(python=PYTHON_VERSIONS)
def format_code(session):
    """Format code with black and isort."""
    session.install("poetry")
    session.run("poetry", "install", "--extras", "test")

    session.run("poetry", "run", "black", "src", "tests")
    session.run("poetry", "run", "isort", "src", "tests")
    session.run("poetry", "run", "ruff", "check", "--fix", "src", "tests")

    session.log("✅ Code formatting completed")


@nox.session(python=PYTHON_VERSIONS)
def test(session):
    """Run the test suite with pytest."""
    session.install("poetry")
    session.run("poetry", "install", "--extras", "test")

    session.run(
        "poetry", "run", "pytest",
        "tests/",
        "-v",
        "--tb=short",
        "--strict-markers",
    )

    session.log("✅ Unit tests completed successfully")


@nox.session(python=PYTHON_VERSIONS)
def coverage(session):
    """Run tests with coverage reporting."""
    session.install("poetry")
    session.run("poetry", "install", "--extras", "test")

    session.run(
        "poetry", "run", "pytest",
        "tests/",
        "--cov=dynamo_cleanup",
        "--cov-report=term-missing",
        "--cov-report=html:htmlcov",
        "--cov-report=xml:coverage.xml",
        "--cov-fail-under=80",
    )

    session.log("✅ Coverage analysis completed")
    session.log("📊 Coverage report available at htmlcov/index.html")


@nox.session(python=PYTHON_VERSIONS)
def plan(session):
    """Print the teardown order for a cluster without touching AWS.

    Examples:
      nox -s plan
      nox -s plan -- --cluster-name my-cluster --region us-east-1
    """
    session.install("poetry")
    session.run("poetry", "install")
    session.run("poetry", "run", "dynamo-cleanup", "plan", *session.posargs)


@nox.session(python=PYTHON_VERSIONS)
def teardown(session):
    """Tear down the deployment, dry run unless arguments are given.

    Examples:
      nox -s teardown
      nox -s teardown -- --yes --report teardown-report.json
    """
    session.install("poetry")
    session.run("poetry", "install")
    args = session.posargs or ["--dry-run"]
    session.run("poetry", "run", "dynamo-cleanup", "run", *args)
    session.log("✅ Teardown completed")


@nox.session(python=PYTHON_VERSIONS)
def clean(session):
    """Clean up build artifacts and cache files."""
    import os
    import shutil

    clean_dirs = [
        ".pytest_cache",
        "__pycache__",
        ".coverage",
        "htmlcov",
        "coverage.xml",
        "dist",
        ".ruff_cache",
        ".mypy_cache",
    ]

    for dir_name in clean_dirs:
        if os.path.exists(dir_name):
            if os.path.isdir(dir_name):
                shutil.rmtree(dir_name)
                session.log(f"🗑️  Removed directory: {dir_name}")
            else:
                os.remove(dir_name)
                session.log(f"🗑️  Removed file: {dir_name}")

    session.log("✅ Cleanup completed")


@nox.session(python=PYTHON_VERSIONS)
def security(session):
    """Run security checks with bandit."""
    session.install("poetry")
    session.run("poetry", "install")
    session.install("bandit")

    session.run("bandit", "-r", "src", "-f", "json")

    session.log("✅ Security checks completed")
