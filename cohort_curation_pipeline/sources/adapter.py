"""DuckDB-backed source adapter.

Reads one configured source into a frame with internal column names and
writes result tables back. Everything above this module works on pandas
frames only.
"""

import logging
from pathlib import Path
from typing import Dict, Any, List, Optional, Sequence, Tuple, Union
import duckdb
import pandas as pd
from ..exceptions import SourceUnavailableError, DatabaseError
from ..models.records import SourceConfig
from ..utils.errors import retry_on_failure

logger = logging.getLogger(__name__)


def quote_identifier(name: str) -> str:
    """Quote a SQL identifier for DuckDB."""
    return '"' + str(name).replace('"', '""') + '"'


def build_select_query(
    source: SourceConfig,
    patient_ids: Optional[Sequence[Any]] = None
) -> Tuple[str, List[Any]]:
    """Compile the SELECT statement for a source.

    Args:
        source: Source record with table or query and column mapping
        patient_ids: Optional patient filter, bound as parameters

    Returns:
        (sql, params) with '?' placeholders
    """
    mapping = source.column_mapping
    select_list = ", ".join(
        f"{quote_identifier(external)} AS {quote_identifier(internal)}"
        for internal, external in mapping.items()
    )

    if source.table_name is not None:
        relation = quote_identifier(source.table_name)
        if source.schema:
            relation = f"{quote_identifier(source.schema)}.{relation}"
    else:
        relation = f"({source.query}) AS src"

    sql = f"SELECT {select_list} FROM {relation}"
    params: List[Any] = []

    if patient_ids is not None:
        placeholders = ", ".join("?" for _ in patient_ids)
        sql += f" WHERE {quote_identifier(mapping['patient_id'])} IN ({placeholders})"
        # numpy scalars are not accepted as bound parameters
        params.extend(pid.item() if hasattr(pid, 'item') else pid for pid in patient_ids)

    return sql, params


class DuckDBSourceAdapter:
    """Reads configured sources from a DuckDB database.

    Accepts a database path or an already-open connection. A path is opened
    lazily and closed by `close()`; a borrowed connection is left open.
    """

    def __init__(
        self,
        database: Union[str, Path, duckdb.DuckDBPyConnection] = ":memory:",
        read_only: bool = False,
        retries: int = 0,
        retry_delay: float = 1.0
    ) -> None:
        if isinstance(database, duckdb.DuckDBPyConnection):
            self._connection: Optional[duckdb.DuckDBPyConnection] = database
            self._owns_connection = False
            self.database = None
        else:
            self._connection = None
            self._owns_connection = True
            self.database = str(database)
        self.read_only = read_only
        self._execute = retry_on_failure(
            max_retries=retries,
            delay=retry_delay,
            exceptions=(duckdb.IOException,)
        )(self._execute_once)

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> 'DuckDBSourceAdapter':
        """Create an adapter from the `database` configuration section."""
        return cls(
            database=settings.get('path', ':memory:'),
            read_only=settings.get('read_only', False),
            retries=settings.get('retries', 0),
            retry_delay=settings.get('retry_delay', 1.0),
        )

    @property
    def connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            try:
                self._connection = duckdb.connect(database=self.database, read_only=self.read_only)
            except duckdb.Error as e:
                raise DatabaseError(f"Cannot open database {self.database}: {e}",
                                    context={"database": self.database})
            logger.info(f"Connected to DuckDB database {self.database}")
        return self._connection

    def _execute_once(self, sql: str, params: List[Any]) -> pd.DataFrame:
        return self.connection.execute(sql, params).fetchdf()

    def fetch(self, source: SourceConfig, patient_ids: Optional[Sequence[Any]] = None) -> pd.DataFrame:
        """Read a source, renaming external columns to internal names.

        Args:
            source: Source record to read
            patient_ids: Optional patient filter

        Returns:
            DataFrame with one column per mapped internal name

        Raises:
            SourceUnavailableError: If the table, query or a column cannot be read
        """
        if patient_ids is not None and len(patient_ids) == 0:
            return pd.DataFrame(columns=list(source.column_mapping))

        sql, params = build_select_query(source, patient_ids)
        logger.debug(f"Reading source {source.name} ({source.db_table})")

        try:
            data = self._execute(sql, params)
        except duckdb.Error as e:
            raise SourceUnavailableError(
                f"Source '{source.name}' ({source.db_table}) is unavailable: {e}",
                context={"source": source.name, "table": source.db_table}
            ) from e

        logger.debug(f"Read {len(data)} rows from {source.db_table}")
        return data

    def read_table(
        self,
        table_name: str,
        schema: Optional[str] = None,
        columns: Optional[Sequence[str]] = None
    ) -> pd.DataFrame:
        """Read a whole reference table, such as a code lookup or baseline dates.

        Raises:
            SourceUnavailableError: If the table or a column cannot be read
        """
        relation = quote_identifier(table_name)
        if schema:
            relation = f"{quote_identifier(schema)}.{relation}"
        select_list = ", ".join(quote_identifier(c) for c in columns) if columns else "*"

        try:
            data = self._execute(f"SELECT {select_list} FROM {relation}", [])
        except duckdb.Error as e:
            raise SourceUnavailableError(
                f"Table {relation} is unavailable: {e}",
                context={"table": table_name, "schema": schema}
            ) from e

        logger.debug(f"Read {len(data)} rows from reference table {relation}")
        return data

    def write_table(self, data: pd.DataFrame, table_name: str, schema: Optional[str] = None) -> None:
        """Create or replace a table from a DataFrame.

        Raises:
            DatabaseError: If the table cannot be written
        """
        target = quote_identifier(table_name)
        try:
            if schema:
                self.connection.execute(f"CREATE SCHEMA IF NOT EXISTS {quote_identifier(schema)}")
                target = f"{quote_identifier(schema)}.{target}"
            self.connection.register("_output_df", data)
            try:
                self.connection.execute(f"CREATE OR REPLACE TABLE {target} AS SELECT * FROM _output_df")
            finally:
                self.connection.unregister("_output_df")
        except duckdb.Error as e:
            raise DatabaseError(f"Failed to write table {table_name}: {e}", context={"table": table_name})

        logger.info(f"Wrote {len(data)} rows to {target}")

    def close(self) -> None:
        if self._connection is not None and self._owns_connection:
            self._connection.close()
            self._connection = None

    def __enter__(self) -> 'DuckDBSourceAdapter':
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
