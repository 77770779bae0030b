"""Root conftest for test suite.

Auto-skips integration tests, which need a Postgres database.
Run explicitly with: DATABASE_URL=... pytest -m integration
"""

import pytest


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless explicitly requested."""
    markexpr = config.getoption("-m", default="")
    explicit_integration = "integration" in markexpr
    running_integration_path = any("tests/integration" in str(arg) for arg in config.args)

    skip_integration = pytest.mark.skip(
        reason="integration tests need Postgres. Run with: pytest -m integration"
    )

    for item in items:
        if (
            "integration" in item.keywords
            and not explicit_integration
            and not running_integration_path
        ):
            item.add_marker(skip_integration)
