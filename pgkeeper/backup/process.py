"""
External process invocation for pg_dump and psql.
"""

import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from .artifacts import BackupError
from .settings import DatabaseTarget


logger = logging.getLogger(__name__)


class DumpFailed(BackupError):
    """Raised when pg_dump cannot be started or exits with an error."""
    pass


class RestoreApplyFailed(BackupError):
    """Raised when psql cannot be started or exits with an error."""
    pass


@dataclass
class ProcessResult:
    exit_code: int
    stderr: str


class ProcessRunner:
    """
    Runs a child process to completion.

    stdout and stderr are drained while waiting for the process to exit,
    so a chatty child can never block on a full pipe.
    """

    def run(
        self,
        args: Sequence[str],
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None
    ) -> ProcessResult:
        """
        Run a command.

        Args:
            args: Program and arguments
            env: Variables added to the current environment
            timeout: Seconds before the child is killed (None: no deadline)

        Returns:
            ProcessResult with the exit code and decoded stderr

        Raises:
            OSError: If the program cannot be started
            subprocess.TimeoutExpired: If the deadline passes
        """
        completed = subprocess.run(
            list(args),
            env={**os.environ, **(env or {})},
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=timeout,
        )
        return ProcessResult(
            exit_code=completed.returncode,
            stderr=completed.stderr.decode('utf-8', errors='replace').strip(),
        )


class DatabaseTools:
    """Builds and runs pg_dump / psql against one database."""

    def __init__(
        self,
        target: DatabaseTarget,
        runner: Optional[ProcessRunner] = None,
        dump_timeout: Optional[float] = None,
        pg_dump_bin: str = 'pg_dump',
        psql_bin: str = 'psql'
    ):
        self.target = target
        self.runner = runner or ProcessRunner()
        self.dump_timeout = dump_timeout
        self.pg_dump_bin = pg_dump_bin
        self.psql_bin = psql_bin

    def dump_args(self, output_path: str, tables: Optional[List[str]] = None) -> List[str]:
        args = [self.pg_dump_bin, *self.target.connection_args(), '-F', 'p', '-f', output_path]
        for table in tables or []:
            args.extend(['-t', table])
        return args

    def restore_args(self, sql_path: str) -> List[str]:
        return [self.psql_bin, *self.target.connection_args(), '-v', 'ON_ERROR_STOP=1', '-f', sql_path]

    def dump(self, output_path: str, tables: Optional[List[str]] = None):
        """
        Dump the database as plain SQL.

        Args:
            output_path: Where pg_dump writes the SQL
            tables: Restrict the dump to these tables (None: whole database)

        Raises:
            DumpFailed: If pg_dump fails to start, times out or exits non-zero
        """
        args = self.dump_args(output_path, tables)
        logger.debug(f"Running pg_dump for {self.target.database} ({len(tables or [])} table filters)")

        try:
            result = self.runner.run(args, env=self.target.process_env(), timeout=self.dump_timeout)
        except subprocess.TimeoutExpired:
            raise DumpFailed(f"pg_dump did not finish within {self.dump_timeout} seconds")
        except OSError as e:
            raise DumpFailed(f"Failed to start pg_dump: {e}")

        if result.exit_code != 0:
            raise DumpFailed(f"pg_dump failed with code {result.exit_code}: {result.stderr}")

    def restore(self, sql_path: str):
        """
        Apply a plain SQL dump with psql.

        Raises:
            RestoreApplyFailed: If psql fails to start or exits non-zero
        """
        try:
            result = self.runner.run(self.restore_args(sql_path), env=self.target.process_env())
        except OSError as e:
            raise RestoreApplyFailed(f"Failed to start psql: {e}")

        if result.exit_code != 0:
            raise RestoreApplyFailed(f"psql failed with code {result.exit_code}: {result.stderr}")
