"""
Shared test fixtures and configuration for pytest.
"""

import logging
import os
import sys
import uuid
from pathlib import Path

import pytest

# Add src directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


logger = logging.getLogger(__name__)


# ============================================================================
# Environment detection
# ============================================================================

def sqlserver_settings() -> dict:
    """SQL Server connection settings for integration tests."""
    return {
        "host": os.environ.get("FINETUNE_SQLSERVER_HOST", "localhost"),
        "port": int(os.environ.get("FINETUNE_SQLSERVER_PORT", "1433")),
        "database": os.environ.get("FINETUNE_SQLSERVER_DATABASE",
                                   os.environ.get("MSSQL_DATABASE", "FineTune")),
        "username": os.environ.get("FINETUNE_SQLSERVER_USER", "sa"),
        "password": os.environ.get("FINETUNE_SQLSERVER_PASSWORD",
                                   os.environ.get("MSSQL_SA_PASSWORD")),
        "driver": os.environ.get("FINETUNE_SQLSERVER_DRIVER", "ODBC Driver 18 for SQL Server"),
    }


def is_sqlserver_available() -> bool:
    """Check if SQL Server is available for testing."""
    settings = sqlserver_settings()
    if not settings["password"]:
        return False
    
    try:
        import pyodbc
        
        conn_str = (
            f"Driver={{{settings['driver']}}};"
            f"Server={settings['host']},{settings['port']};"
            f"Database={settings['database']};"
            f"UID={settings['username']};"
            f"PWD={settings['password']};"
            f"TrustServerCertificate=yes"
        )
        conn = pyodbc.connect(conn_str, timeout=5)
        conn.close()
        return True
    
    except Exception as e:
        logger.debug(f"SQL Server not available: {e}")
        return False


# ============================================================================
# Pytest hooks
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (no external dependencies)")
    config.addinivalue_line("markers", "integration: Integration tests (requires SQL Server)")


def pytest_collection_modifyitems(config, items):
    """Automatically skip integration tests if SQL Server is not available."""
    if not any("integration" in item.keywords for item in items):
        return
    if is_sqlserver_available():
        return
    
    skip_sqlserver = pytest.mark.skip(
        reason="SQL Server not available (set MSSQL_SA_PASSWORD and ensure SQL Server is running)"
    )
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_sqlserver)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(scope="session")
def sqlserver_config() -> dict:
    """Session-scoped fixture providing SQL Server connection configuration."""
    return sqlserver_settings()


@pytest.fixture(scope="function")
def test_schema_name() -> str:
    """Fixture providing a unique test schema name."""
    return f"test_{uuid.uuid4().hex[:8]}"
