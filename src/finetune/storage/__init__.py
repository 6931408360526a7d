"""
Lifecycle store implementations.

SQLite (SqliteLifecycleStore) backs local runs and tests; SQL Server
(SqlServerLifecycleStore) is the production backend.

To select backend, set the FINETUNE_DB_BACKEND environment variable:
    - FINETUNE_DB_BACKEND=sqlite (default)
    - FINETUNE_DB_BACKEND=sqlserver
"""

import logging
import os
from pathlib import Path
from typing import Optional, Union

from .base import LifecycleStore, UPDATABLE_SNAPSHOT_COLUMNS
from .sqlite_store import SqliteLifecycleStore


logger = logging.getLogger(__name__)


# Lazy import so pyodbc is only needed when SQL Server is selected
def _get_sqlserver_store():
    from .sqlserver_store import SqlServerLifecycleStore
    return SqlServerLifecycleStore


def create_store(
    backend: Optional[str] = None,
    # SQLite options
    db_path: Optional[Union[str, Path]] = None,
    # SQL Server options
    connection_string: Optional[str] = None,
    host: str = "localhost",
    port: int = 1433,
    database: str = "FineTune",
    username: str = "sa",
    password: Optional[str] = None,
    driver: str = "ODBC Driver 18 for SQL Server",
    schema: str = "finetune",
    trust_server_certificate: bool = True,
    auto_init: bool = True,
) -> LifecycleStore:
    """
    Factory function to create the configured lifecycle store.
    
    Args:
        backend: 'sqlite' or 'sqlserver'. Defaults to FINETUNE_DB_BACKEND or 'sqlite'.
        
        SQLite options:
            db_path: Path to SQLite database file
            
        SQL Server options:
            connection_string: Full ODBC connection string
            host, port, database, username, password, driver: Connection parts
            schema: Schema name for tables
            trust_server_certificate: Trust self-signed certs
            
        auto_init: Create schema/tables if missing
            
    Raises:
        ValueError: If backend is not recognized
        ImportError: If pyodbc is missing for the SQL Server backend
    """
    if backend is None:
        backend = os.environ.get("FINETUNE_DB_BACKEND", "sqlite")
    backend = backend.lower()
    
    if backend == "sqlite":
        if db_path is None:
            db_path = Path("local/state/finetune.db")
        logger.debug(f"Using SQLite lifecycle store at {db_path}")
        return SqliteLifecycleStore(db_path=Path(db_path), auto_init=auto_init)
    
    elif backend == "sqlserver":
        SqlServerLifecycleStore = _get_sqlserver_store()
        
        if password is None:
            password = os.environ.get("FINETUNE_SQLSERVER_PASSWORD") or os.environ.get("MSSQL_SA_PASSWORD")
        if connection_string is None:
            connection_string = os.environ.get("FINETUNE_SQLSERVER_CONN_STR")
        
        return SqlServerLifecycleStore(
            connection_string=connection_string,
            host=host,
            port=port,
            database=database,
            username=username,
            password=password,
            driver=driver,
            schema=schema,
            auto_init=auto_init,
            trust_server_certificate=trust_server_certificate,
        )
    
    else:
        raise ValueError(
            f"Unknown backend: {backend}. "
            "Supported backends: 'sqlite' (default), 'sqlserver'"
        )


__all__ = [
    "LifecycleStore",
    "UPDATABLE_SNAPSHOT_COLUMNS",
    "SqliteLifecycleStore",
    "create_store",
]
