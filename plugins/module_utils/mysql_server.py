#!/usr/bin/python
# -*- coding: utf-8 -*-

# Copyright: (c) 2025, Cockroach Labs
# Apache License, Version 2.0 (see LICENSE or http://www.apache.org/licenses/LICENSE-2.0)

from __future__ import absolute_import, division, print_function
__metaclass__ = type

import traceback
import re
import time
from collections import namedtuple

from ansible.module_utils.basic import missing_required_lib
from ansible.module_utils.compat.version import LooseVersion

MYSQL_IMP_ERR = None
try:
    import pymysql
    HAS_PYMYSQL = True
except ImportError:
    MYSQL_IMP_ERR = traceback.format_exc()
    HAS_PYMYSQL = False

DIALECT_MYSQL = 'mysql'
DIALECT_MARIADB = 'mariadb'
DIALECT_TIDB = 'tidb'

# Window in which NO_AUTO_CREATE_USER exists and is needed so GRANT never creates users
NO_AUTO_CREATE_USER_MIN = LooseVersion('5.7.5')
NO_AUTO_CREATE_USER_MAX = LooseVersion('8.0.0')


def mysql_common_argument_spec():
    """Connection options shared by every module of the collection"""
    return dict(
        login_host=dict(type='str', default='localhost'),
        login_port=dict(type='int', default=3306),
        login_user=dict(type='str', default='root'),
        login_password=dict(type='str', no_log=True),
        login_unix_socket=dict(type='str'),
        login_database=dict(type='str'),
        ssl_ca=dict(type='path'),
        ssl_cert=dict(type='path'),
        ssl_key=dict(type='path'),
        connect_timeout=dict(type='int', default=30),
    )


class ServerInfo(namedtuple('ServerInfo', ['version', 'version_string', 'dialect'])):
    """
    Immutable description of the connected server.

    Resolved once per connection and handed to the grant engine explicitly.
    """
    __slots__ = ()

    @property
    def is_mariadb(self):
        return self.dialect == DIALECT_MARIADB

    @property
    def is_tidb(self):
        return self.dialect == DIALECT_TIDB

    def to_dict(self):
        return {
            'version': str(self.version),
            'version_string': self.version_string,
            'dialect': self.dialect,
        }


def parse_server_version(version_string):
    """
    Build a ServerInfo from the value of @@GLOBAL.version

    Examples of what servers report:
        8.0.36                       -> MySQL 8.0.36
        5.7.44-log                   -> MySQL 5.7.44
        5.7.25-TiDB-v7.1.0           -> TiDB, MySQL 5.7.25 compatible
        10.11.6-MariaDB-1:10.11.6    -> MariaDB 10.11.6
        5.5.5-10.6.12-MariaDB        -> MariaDB 10.6.12 behind the replication prefix
    """
    raw = version_string.split(':', 1)[0].strip()
    dialect = DIALECT_MYSQL
    if 'tidb' in raw.lower():
        dialect = DIALECT_TIDB
    elif 'mariadb' in raw.lower():
        dialect = DIALECT_MARIADB
        raw = re.sub(r'^5\.5\.5-', '', raw)

    match = re.match(r'^(\d+(?:\.\d+)*)', raw)
    if not match:
        raise ValueError("Unable to parse server version: %s" % version_string)

    return ServerInfo(LooseVersion(match.group(1)), version_string, dialect)


class MySQLQueryError(Exception):
    """A statement failed on the server; keeps the statement for diagnosis"""

    def __init__(self, query, errno, message):
        super(MySQLQueryError, self).__init__("Error running SQL (%s): (%s) %s" % (query, errno, message))
        self.query = query
        self.errno = errno
        self.message = message


class MySQLHelper(object):
    """
    Helper class for managing MySQL connections and statement execution
    """

    def __init__(self, module):
        self.module = module
        self.host = module.params.get('login_host', 'localhost')
        self.port = module.params.get('login_port', 3306)
        self.user = module.params.get('login_user', 'root')
        self.password = module.params.get('login_password') or ''
        self.unix_socket = module.params.get('login_unix_socket')
        self.database = module.params.get('login_database')
        self.ssl_ca = module.params.get('ssl_ca')
        self.ssl_cert = module.params.get('ssl_cert')
        self.ssl_key = module.params.get('ssl_key')
        self.conn_timeout = module.params.get('connect_timeout', 30)
        self.conn = None
        self._server = None

    def connect(self):
        """
        Connect to the MySQL server and prepare the session
        """
        if not HAS_PYMYSQL:
            self.module.fail_json(msg=missing_required_lib("PyMySQL"), exception=MYSQL_IMP_ERR)

        conn_params = dict(
            host=self.host,
            port=self.port,
            user=self.user,
            password=self.password,
            connect_timeout=self.conn_timeout,
            autocommit=True,
            program_name='ansible_mysql',
        )

        if self.unix_socket:
            conn_params['unix_socket'] = self.unix_socket

        if self.database:
            conn_params['database'] = self.database

        ssl = {}
        if self.ssl_ca:
            ssl['ca'] = self.ssl_ca
        if self.ssl_cert:
            ssl['cert'] = self.ssl_cert
        if self.ssl_key:
            ssl['key'] = self.ssl_key
        if ssl:
            conn_params['ssl'] = ssl

        # Attempt to connect with retries for transient network issues
        retries = 3
        delay = 2
        last_error = None

        for attempt in range(retries):
            try:
                self.conn = pymysql.connect(**conn_params)
                break
            except pymysql.err.OperationalError as e:
                last_error = e
                if attempt < retries - 1:
                    time.sleep(delay)
                    delay *= 2  # Exponential backoff
        else:
            self.module.fail_json(msg="Unable to connect to MySQL after multiple attempts: %s" % str(last_error))

        self._server = self._resolve_server()
        self._set_sql_mode(self._server)
        return self.conn

    def _resolve_server(self):
        rows = self.execute_query("SELECT @@GLOBAL.version")
        server = parse_server_version(rows[0][0])
        self.module.debug("Connected to %s server %s" % (server.dialect, server.version_string))
        return server

    def _set_sql_mode(self, server):
        # No ANSI_QUOTES: identifiers in SHOW GRANTS must come back backtick quoted
        if server.dialect == DIALECT_MYSQL and NO_AUTO_CREATE_USER_MIN <= server.version < NO_AUTO_CREATE_USER_MAX:
            self.execute_query("SET SESSION sql_mode='NO_AUTO_CREATE_USER'", fetch=False)
        else:
            self.execute_query("SET SESSION sql_mode=''", fetch=False)

    @property
    def server(self):
        """ServerInfo of the current connection, connecting on first use"""
        if self.conn is None:
            self.connect()
        return self._server

    def execute_query(self, query, params=None, fetch=True):
        """
        Execute a SQL statement and return the results

        Args:
            query: The SQL statement to execute
            params: The parameters for the statement (optional)
            fetch: Whether to fetch and return results (default: True)

        Raises:
            MySQLQueryError: the server rejected the statement
        """
        if self.conn is None:
            self.connect()

        self.module.debug("SQL: %s" % query)
        cursor = self.conn.cursor()
        try:
            cursor.execute(query, params)
            if fetch:
                return list(cursor.fetchall())
            return True
        except pymysql.err.MySQLError as e:
            errno, message = error_details(e)
            raise MySQLQueryError(query, errno, message)
        finally:
            cursor.close()

    def show_warnings(self):
        """
        Return (level, code, message) tuples raised by the previous statement
        """
        return [tuple(row) for row in self.execute_query("SHOW WARNINGS")]

    def close(self):
        """
        Close the database connection
        """
        if self.conn:
            self.conn.close()
            self.conn = None
            self._server = None


def error_details(error):
    """Split a PyMySQL error into (errno, message)"""
    args = getattr(error, 'args', ())
    if len(args) >= 2 and isinstance(args[0], int):
        return args[0], str(args[1])
    return 0, str(error)
