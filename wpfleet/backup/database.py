"""
Database engine access: logical dumps, provisioning and imports.

The engine only talks to the DatabaseDumper / DatabaseProvisioner
interfaces; MySQLDatabase is the concrete implementation that shells out to
mysqldump and mysql. Authentication is resolved before any command runs:
either a client defaults file (e.g. /root/.my.cnf) or an explicit
user/password pair. There is no interactive password prompt.
"""

import gzip
import io
import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from .commands import run_command
from .errors import CommandError, CredentialsUnavailable, DumpFailed
from .sites import DatabaseCredentials

logger = logging.getLogger(__name__)


class DatabaseDumper(ABC):
    """Produces a compressed logical dump of one database."""

    @abstractmethod
    def ensure_credentials(self):
        """Raise CredentialsUnavailable if the engine cannot authenticate."""

    @abstractmethod
    def dump(self, database_name: str, output_path: str, cancel_event: Optional[threading.Event] = None):
        """Write a gzip-compressed dump of database_name to output_path."""


class DatabaseProvisioner(ABC):
    """Creates databases and users and imports dumps during a restore."""

    @abstractmethod
    def provision(self, credentials: DatabaseCredentials):
        """Create the database and user (idempotent) and grant access to that database only."""

    @abstractmethod
    def import_dump(self, database_name: str, dump_path: str):
        """Decompress dump_path and feed it to the database's query interface."""


def quote_identifier(name: str) -> str:
    """Quote a MySQL identifier with backticks."""
    if not name or '\x00' in name:
        raise ValueError(f"Invalid identifier: {name!r}")
    return '`' + name.replace('`', '``') + '`'


def quote_string(value: str) -> str:
    """Quote a MySQL string literal."""
    if '\x00' in value:
        raise ValueError("String literal contains a NUL byte")
    escaped = value.replace('\\', '\\\\').replace("'", "\\'")
    return f"'{escaped}'"


def provisioning_sql(credentials: DatabaseCredentials, user_host: str = 'localhost') -> str:
    """
    Build the idempotent provisioning statements for a restore.

    Privileges are granted on the single restored database, never broader.
    """
    database = quote_identifier(credentials.database_name)
    account = f"{quote_string(credentials.database_user)}@{quote_string(user_host)}"
    password = quote_string(credentials.database_password)

    return '\n'.join([
        f"CREATE DATABASE IF NOT EXISTS {database} CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci;",
        f"CREATE USER IF NOT EXISTS {account} IDENTIFIED BY {password};",
        f"GRANT ALL PRIVILEGES ON {database}.* TO {account};",
        "FLUSH PRIVILEGES;",
        '',
    ])


class MySQLDatabase(DatabaseDumper, DatabaseProvisioner):
    """
    MySQL/MariaDB access through the mysqldump and mysql client binaries.
    """

    def __init__(
        self,
        defaults_file: Optional[str] = '/root/.my.cnf',
        user: Optional[str] = None,
        password: Optional[str] = None,
        host: Optional[str] = None,
        mysqldump_binary: str = 'mysqldump',
        mysql_binary: str = 'mysql',
        timeout: Optional[float] = None,
    ):
        """
        Initialize MySQL access.

        Args:
            defaults_file: Client options file with credentials; used when it exists
            user: Explicit user, used when no defaults file is available
            password: Explicit password for user
            host: Server host (omit for the local socket)
            mysqldump_binary: Dump utility
            mysql_binary: Client used for provisioning and imports
            timeout: Seconds before a single command is killed
        """
        self.defaults_file = defaults_file
        self.user = user
        self.password = password
        self.host = host
        self.mysqldump_binary = mysqldump_binary
        self.mysql_binary = mysql_binary
        self.timeout = timeout

    def _auth(self) -> Tuple[List[str], Dict[str, str]]:
        """
        Resolve authentication options.

        Returns:
            (extra argv options, extra environment)

        Raises:
            CredentialsUnavailable: If neither a defaults file nor explicit credentials exist
        """
        args = []
        env = {}

        if self.defaults_file and os.path.isfile(self.defaults_file):
            # Must be the first option on the command line
            args.append(f'--defaults-extra-file={self.defaults_file}')
        elif self.user and self.password is not None:
            args.append(f'--user={self.user}')
            env['MYSQL_PWD'] = self.password
        else:
            raise CredentialsUnavailable(
                f"No database credentials: defaults file {self.defaults_file or '(none)'} "
                f"not found and no explicit user/password configured"
            )

        if self.host:
            args.append(f'--host={self.host}')

        return args, env

    def ensure_credentials(self):
        self._auth()

    def dump(self, database_name: str, output_path: str, cancel_event: Optional[threading.Event] = None):
        """
        Dump a database through a streaming gzip compressor.

        Raises:
            CredentialsUnavailable: If authentication cannot be resolved
            DumpFailed: If mysqldump fails
        """
        auth_args, env = self._auth()
        argv = [
            self.mysqldump_binary,
            *auth_args,
            '--single-transaction',
            '--quick',
            '--routines',
            '--triggers',
            database_name,
        ]

        try:
            with gzip.open(output_path, 'wb') as out:
                run_command(argv, timeout=self.timeout, cancel_event=cancel_event, output_stream=out, env=env)
        except CommandError as e:
            raise DumpFailed(f"Database dump of {database_name} failed: {e}")
        except OSError as e:
            raise DumpFailed(f"Cannot write dump {output_path}: {e}")

    def execute(self, sql: str, database_name: Optional[str] = None):
        """
        Run SQL statements through the client's stdin.

        Statements are never put on the command line, so passwords do not
        show up in the process list.

        Raises:
            CommandError: If the client fails
        """
        auth_args, env = self._auth()
        argv = [self.mysql_binary, *auth_args]
        if database_name:
            argv.append(database_name)
        run_command(argv, timeout=self.timeout, input_stream=io.BytesIO(sql.encode('utf-8')), env=env)

    def provision(self, credentials: DatabaseCredentials):
        logger.info(
            f"Provisioning database {credentials.database_name} for user {credentials.database_user}@localhost"
        )
        self.execute(provisioning_sql(credentials))

    def import_dump(self, database_name: str, dump_path: str):
        auth_args, env = self._auth()
        argv = [self.mysql_binary, *auth_args, database_name]

        logger.info(f"Importing {os.path.basename(dump_path)} into {database_name}")
        try:
            with gzip.open(dump_path, 'rb') as stream:
                run_command(argv, timeout=self.timeout, input_stream=stream, env=env)
        except (OSError, EOFError) as e:
            raise CommandError(f"Cannot read dump {dump_path}: {e}")
