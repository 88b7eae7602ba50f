#!/usr/bin/python
# -*- coding: utf-8 -*-

# Copyright: (c) 2025, Cockroach Labs
# Apache License, Version 2.0 (see LICENSE or http://www.apache.org/licenses/LICENSE-2.0)

"""
Grant reconciliation for MySQL compatible servers.

Reads what a principal currently holds through SHOW GRANTS, compares it with
the declared privileges or roles and issues the GRANT/REVOKE statements that
bring the server in line. Server text is parsed into a closed set of grant
facts (table privileges, procedure/function privileges, role membership).
"""

from __future__ import absolute_import, division, print_function
__metaclass__ = type

import re
from collections import namedtuple

from ansible.module_utils.compat.version import LooseVersion

# 1141 = ER_NONEXISTING_GRANT
# 1147 = ER_NONEXISTING_TABLE_GRANT
# 1403 = ER_NONEXISTING_PROC_GRANT
NONEXISTING_GRANT_ERRORS = (1141, 1147, 1403)

# 1133 = ER_PASSWORD_NO_MATCH (no such user)
# 1396 = ER_CANNOT_USER
UNKNOWN_PRINCIPAL_ERRORS = (1133, 1396)

# Roles are supported on versions strictly greater than these
ROLE_SUPPORT_THRESHOLDS = {
    'mysql': '8.0.0',
    'tidb': '8.0.0',
    'mariadb': '10.0.4',
}

NO_TLS_OPTION = 'NONE'


class GrantError(Exception):
    """Base class for grant reconciliation failures"""


class GrantParseError(GrantError):
    def __init__(self, line):
        super(GrantParseError, self).__init__("failed to parse grant statement: %s" % line)
        self.line = line


class DriftError(GrantError):
    pass


class UnsupportedOperationError(GrantError):
    pass


class UnknownPrincipalError(GrantError):
    pass


class StatementError(GrantError):
    """A GRANT/REVOKE/SHOW statement failed for a reason we do not classify"""

    def __init__(self, statement, error):
        super(StatementError, self).__init__("Error running SQL (%s): %s" % (statement, error))
        self.statement = statement
        self.error = error
        self.errno = mysql_error_number(error)


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

def mysql_error_number(error):
    """
    Server error number carried by an exception, 0 when it is not a MySQL error
    """
    if error is None:
        return 0
    errno = getattr(error, 'errno', None)
    if isinstance(errno, int):
        return errno
    args = getattr(error, 'args', ())
    if len(args) >= 2 and isinstance(args[0], int):
        return args[0]
    return 0


def is_non_existing_grant(error):
    return mysql_error_number(error) in NONEXISTING_GRANT_ERRORS


def is_unknown_principal(error):
    return mysql_error_number(error) in UNKNOWN_PRINCIPAL_ERRORS


# ---------------------------------------------------------------------------
# Principals
# ---------------------------------------------------------------------------

def _quote_string(value):
    return "'%s'" % value.replace("'", "''")


def quote_role(role):
    """
    SQL form of a role name: 'r1', or 'r1'@'localhost' when a host is given
    """
    name, sep, host = role.partition('@')
    if sep:
        return "%s@%s" % (_quote_string(name), _quote_string(host))
    return _quote_string(name)


class User(namedtuple('User', ['name', 'host'])):
    __slots__ = ()

    def sql_string(self):
        return "%s@%s" % (_quote_string(self.name), _quote_string(self.host))

    def lock_key(self):
        return self.sql_string()

    def __str__(self):
        return self.sql_string()


class Role(namedtuple('Role', ['name'])):
    __slots__ = ()

    def sql_string(self):
        return _quote_string(self.name)

    def lock_key(self):
        return self.sql_string()

    def __str__(self):
        return self.sql_string()


def principal_from_params(user=None, host=None, role=None):
    """
    Build the grant subject from module parameters.

    A user needs both name and host, a role only its name.
    """
    if user and host:
        return User(user, host)
    if role:
        return Role(role)
    raise GrantError("One of user/host or role is required")


def normalize_user_host(user_host):
    """
    Comparable form of a principal as written in SQL or by the server.

    'app'@'%', `app`@`%` and app all become app@%.
    """
    if '@' not in user_host:
        user_host = "%s@%%" % user_host
    for quote in ("'", '`', '"'):
        user_host = user_host.replace(quote, '')
    return user_host


def principals_match(principal, grantee):
    return normalize_user_host(principal.sql_string()) == normalize_user_host(grantee)


# ---------------------------------------------------------------------------
# Object references
# ---------------------------------------------------------------------------

RE_CALLABLE = re.compile(r'^(function|procedure) (.*)$', re.IGNORECASE)
RE_CALLABLE_WITHOUT_DATABASE = re.compile(r'^(function|procedure) ([^.]*)$', re.IGNORECASE)
RE_CALLABLE_WITH_DATABASE = re.compile(r'^(function|procedure) ([^.]*)\.([^.]*)$', re.IGNORECASE)


def quote_identifier(name):
    return "`%s`" % name.replace('`', '``')


def unquote(identifier):
    """Strip one level of surrounding backticks or double quotes"""
    identifier = identifier.strip()
    if len(identifier) >= 2 and identifier[0] == identifier[-1] and identifier[0] in '`"\'':
        inner = identifier[1:-1]
        return inner.replace(identifier[0] * 2, identifier[0])
    return identifier


def format_database_name(database):
    if database == '*' or database.endswith('`'):
        return database
    m = RE_CALLABLE.match(database)
    if m:
        # The callable keyword stays bare, only the name is quoted
        parts = m.group(2).split('.')
        return "%s %s" % (m.group(1), '.'.join(quote_identifier(p) for p in parts))
    return quote_identifier(database)


def format_table_name(table):
    if not table or table == '*':
        return '*'
    return quote_identifier(table)


def normalize_database(database):
    """Comparable form of a database spec, e.g. PROCEDURE `db` and procedure db match"""
    database = database.replace('`', '').replace('"', '').strip()
    m = RE_CALLABLE.match(database)
    if m:
        return "%s %s" % (m.group(1).upper(), m.group(2))
    return database


class ObjectReference(namedtuple('ObjectReference', ['database', 'table'])):
    """
    Target of a privilege grant.

    Either a plain schema/table pair (table '*' for every table) or a
    callable written as 'PROCEDURE db' with the routine in table, or
    'FUNCTION db.routine'.
    """
    __slots__ = ()

    def __new__(cls, database, table='*'):
        return super(ObjectReference, cls).__new__(cls, database, table or '*')

    @property
    def is_callable(self):
        return bool(RE_CALLABLE_WITH_DATABASE.match(self.database) or
                    RE_CALLABLE_WITHOUT_DATABASE.match(self.database))

    def _callable_parts(self):
        m = RE_CALLABLE_WITH_DATABASE.match(self.database)
        if m:
            return m.group(1).upper(), unquote(m.group(2)), unquote(m.group(3))
        m = RE_CALLABLE_WITHOUT_DATABASE.match(self.database)
        if m:
            return m.group(1).upper(), unquote(m.group(2)), unquote(self.table)
        return None, None, None

    @property
    def callable_type(self):
        return self._callable_parts()[0]

    @property
    def callable_schema(self):
        return self._callable_parts()[1]

    @property
    def callable_name(self):
        return self._callable_parts()[2]

    def sql_string(self):
        if self.is_callable:
            kind, schema, name = self._callable_parts()
            return "%s %s.%s" % (kind, quote_identifier(schema), quote_identifier(name))
        return "%s.%s" % (format_database_name(self.database), format_table_name(self.table))

    def __str__(self):
        return self.sql_string()


# ---------------------------------------------------------------------------
# Grant facts
# ---------------------------------------------------------------------------

TablePrivilegeGrant = namedtuple(
    'TablePrivilegeGrant', ['database', 'table', 'privileges', 'grant_option', 'grantee'])

ProcedurePrivilegeGrant = namedtuple(
    'ProcedurePrivilegeGrant',
    ['database', 'callable_type', 'callable_name', 'privileges', 'grant_option', 'grantee'])

RoleGrant = namedtuple('RoleGrant', ['roles', 'admin_option', 'grantee'])

GRANT_TYPES = (TablePrivilegeGrant, ProcedurePrivilegeGrant, RoleGrant)

GrantView = namedtuple('GrantView', ['principal', 'reference', 'grant_option', 'privileges', 'roles'])

GrantRequest = namedtuple(
    'GrantRequest', ['principal', 'reference', 'privileges', 'roles', 'grant_option', 'tls_option'])

PrivilegeDiff = namedtuple('PrivilegeDiff', ['to_grant', 'to_revoke', 'kept'])

RoleDiff = namedtuple('RoleDiff', ['to_grant', 'to_revoke'])

ReconcileResult = namedtuple('ReconcileResult', ['changed', 'queries', 'view'])


def grant_request(principal, reference, privileges=None, roles=None, grant_option=False, tls_option=NO_TLS_OPTION):
    """Build a GrantRequest; privileges and roles are mutually exclusive"""
    privileges = list(privileges or [])
    roles = list(roles or [])
    if privileges and roles:
        raise GrantError("privileges and roles are mutually exclusive")
    if roles:
        # Role membership is not scoped to a database or table
        reference = None
    return GrantRequest(principal, reference, privileges, roles, bool(grant_option), tls_option or NO_TLS_OPTION)


# ---------------------------------------------------------------------------
# Parsing of SHOW GRANTS output
# ---------------------------------------------------------------------------

_IDENT = r'(?:`(?:[^`]|``)*`|"(?:[^"]|"")*"|\'[^\']*\'|[^\s.`"\']+)'

RE_PRIVILEGE_GRANT = re.compile(
    r'^GRANT (?P<privileges>.+?) ON '
    r'(?:(?P<kind>FUNCTION|PROCEDURE|TABLE) )?'
    r'(?P<database>%s)\.(?P<table>%s) '
    r'TO (?P<grantee>\S+)' % (_IDENT, _IDENT),
    re.IGNORECASE)

# Ex: GRANT `app_read`@`%`,`app_write`@`%` TO `rw_user1`@`localhost`
RE_ROLE_GRANT = re.compile(r'^GRANT (?P<roles>.+) TO (?P<grantee>\S+)', re.IGNORECASE)

RE_WITH_OPTION = re.compile(r'\bWITH (?:GRANT|ADMIN) OPTION\b', re.IGNORECASE)

# Lines SHOW GRANTS may print that carry nothing we manage
RE_SKIPPED = re.compile(r'^(?:GRANT PROXY ON |SET DEFAULT ROLE )', re.IGNORECASE)


def extract_privileges(text):
    """
    Split a privilege list on top level commas.

    Column lists keep their commas, so
    'SELECT, INSERT(a,b), DROP' -> ['SELECT', 'INSERT(a,b)', 'DROP'].
    USAGE means "no privileges" and is dropped.
    """
    tokens = []
    current = []
    depth = 0
    for char in text:
        if char == ',' and depth == 0:
            tokens.append(''.join(current))
            current = []
            continue
        if char == '(':
            depth += 1
        elif char == ')' and depth > 0:
            depth -= 1
        elif char.isspace() and not current:
            continue
        current.append(char)
    tokens.append(''.join(current))

    return [t.strip() for t in tokens if t.strip() and t.strip().upper() != 'USAGE']


def _role_name(text):
    """
    Role as written by the server, `r1`@`%` -> r1, `r1`@`localhost` -> r1@localhost
    """
    name, sep, host = text.strip().partition('@')
    name = unquote(name.strip())
    host = unquote(host.strip()) if sep else ''
    if host and host != '%':
        return "%s@%s" % (name, host)
    return name


def parse_grant_line(line, module=None):
    """
    Turn one line of SHOW GRANTS output into a grant fact.

    Args:
        line: raw text as returned by the server
        module: optional AnsibleModule used for warnings and debug output

    Returns:
        TablePrivilegeGrant, ProcedurePrivilegeGrant or RoleGrant, or None
        when the line holds nothing to manage (USAGE only, PROXY, partial
        revokes, default role declarations)

    Raises:
        GrantParseError: the line matches no known grant syntax
    """
    line = line.strip()

    if line.upper().startswith('REVOKE'):
        if module is not None:
            module.warn(
                "Partial revokes are not supported and lead to unexpected behavior. "
                "See https://dev.mysql.com/doc/refman/8.0/en/partial-revokes.html on how to disable them. "
                "Relevant partial revoke: %s" % line)
        return None

    if RE_SKIPPED.match(line):
        if module is not None:
            module.debug("Skipping unmanaged grant line: %s" % line)
        return None

    with_option = bool(RE_WITH_OPTION.search(line))

    m = RE_PRIVILEGE_GRANT.match(line)
    if m:
        privileges = extract_privileges(m.group('privileges'))
        if not privileges:
            return None
        kind = (m.group('kind') or '').upper()
        if kind in ('FUNCTION', 'PROCEDURE'):
            return ProcedurePrivilegeGrant(
                database=unquote(m.group('database')),
                callable_type=kind,
                callable_name=unquote(m.group('table')),
                privileges=privileges,
                grant_option=with_option,
                grantee=m.group('grantee'),
            )
        return TablePrivilegeGrant(
            database=unquote(m.group('database')),
            table=unquote(m.group('table')),
            privileges=privileges,
            grant_option=with_option,
            grantee=m.group('grantee'),
        )

    m = RE_ROLE_GRANT.match(line)
    if m:
        roles = [_role_name(r) for r in m.group('roles').split(',') if r.strip()]
        return RoleGrant(roles=roles, admin_option=with_option, grantee=m.group('grantee'))

    raise GrantParseError(line)


def parse_grants(lines, principal, module=None):
    """
    Parse every SHOW GRANTS line and keep the facts that belong to principal.

    Some servers (Percona) also return grants of a broader host pattern than
    the one requested; those are dropped here.
    """
    facts = []
    for line in lines:
        fact = parse_grant_line(line, module)
        if fact is None:
            continue
        if not principals_match(principal, fact.grantee):
            if module is not None:
                module.debug("Skipping grant for %s while we want %s" % (fact.grantee, principal))
            continue
        facts.append(fact)
    return facts


# ---------------------------------------------------------------------------
# Normalization and diffing
# ---------------------------------------------------------------------------

RE_COLUMN_LIST = re.compile(r'^([^(]*)\((.*)\)$')


def normalize_column_order(privilege):
    m = RE_COLUMN_LIST.match(privilege)
    if not m:
        return privilege
    columns = sorted(c.strip('` ') for c in m.group(2).split(','))
    return "%s(%s)" % (m.group(1), ', '.join(columns))


def normalize_privilege(privilege):
    """
    Comparison key of a privilege: case, spaces, backticks and column order
    do not matter, ALL is ALL PRIVILEGES.
    """
    key = privilege.replace(' ', '').replace('`', '').upper()
    if key in ('ALL', 'ALLPRIVILEGES'):
        return 'ALL PRIVILEGES'
    return normalize_column_order(key)


def normalize_privileges(privileges):
    return [normalize_privilege(p) for p in privileges]


def dedupe_privileges(privileges):
    """Drop privileges equal to an earlier one after normalization, first spelling wins"""
    seen = set()
    result = []
    for privilege in privileges:
        key = normalize_privilege(privilege)
        if key not in seen:
            seen.add(key)
            result.append(privilege)
    return result


def make_privs(have, want):
    """
    Privileges of want, spelled the way the server spells them when it
    already holds an equivalent one.

    have: SELECT(`c1`, `c2`)   want: select(c2,c1), UPDATE
    ->    SELECT(`c1`, `c2`), UPDATE
    """
    have_norm_to_have = {}
    for privilege in have:
        have_norm_to_have.setdefault(normalize_privilege(privilege), privilege)

    return [have_norm_to_have.get(normalize_privilege(w), w) for w in dedupe_privileges(want)]


def diff_privileges(have, want):
    have_keys = set(normalize_privileges(have))
    want_keys = set(normalize_privileges(want))

    to_grant = [w for w in dedupe_privileges(want) if normalize_privilege(w) not in have_keys]
    to_revoke = [h for h in dedupe_privileges(have) if normalize_privilege(h) not in want_keys]
    kept = [p for p in make_privs(have, want) if normalize_privilege(p) in have_keys]
    return PrivilegeDiff(to_grant, to_revoke, kept)


def diff_roles(have, want):
    have = set(have)
    want = set(want)
    return RoleDiff(sorted(want - have), sorted(have - want))


def privileges_equal(left, right):
    return set(normalize_privileges(left)) == set(normalize_privileges(right))


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

def fact_matches(fact, reference):
    if reference is None:
        return False
    if isinstance(fact, ProcedurePrivilegeGrant):
        return (reference.is_callable and
                fact.callable_type == reference.callable_type and
                fact.database == reference.callable_schema and
                fact.callable_name.lower() == reference.callable_name.lower())
    if isinstance(fact, TablePrivilegeGrant):
        return (not reference.is_callable and
                normalize_database(fact.database) == normalize_database(reference.database) and
                fact.table == unquote(reference.table))
    return False


def aggregate(facts, principal, reference, grant_option):
    """
    Fold the facts of one principal into a GrantView for one object and
    one grant/admin option flag.
    """
    privileges = []
    roles = []
    for fact in facts:
        if isinstance(fact, RoleGrant):
            # Roles don't depend on database / table settings
            if fact.admin_option == grant_option:
                roles.extend(r for r in fact.roles if r not in roles)
        elif fact.grant_option == grant_option and fact_matches(fact, reference):
            privileges.extend(fact.privileges)

    return GrantView(principal, reference, grant_option, dedupe_privileges(privileges), roles)


def collect_grants(facts):
    """
    Every fact of a principal as plain dicts, merged per object and flag
    """
    merged = {}
    order = []
    for fact in facts:
        if isinstance(fact, RoleGrant):
            key = ('roles', fact.admin_option)
            entry = {'roles': [], 'admin_option': fact.admin_option}
            items, field = fact.roles, 'roles'
        elif isinstance(fact, ProcedurePrivilegeGrant):
            database = "%s %s" % (fact.callable_type, fact.database)
            key = (database, fact.callable_name, fact.grant_option)
            entry = {'database': database, 'table': fact.callable_name,
                     'privileges': [], 'grant_option': fact.grant_option}
            items, field = fact.privileges, 'privileges'
        else:
            key = (fact.database, fact.table, fact.grant_option)
            entry = {'database': fact.database, 'table': fact.table,
                     'privileges': [], 'grant_option': fact.grant_option}
            items, field = fact.privileges, 'privileges'

        if key not in merged:
            merged[key] = entry
            order.append(key)
        merged[key][field].extend(i for i in items if i not in merged[key][field])

    return [merged[k] for k in order]


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------

def supports_roles(server):
    """Role grants need MySQL newer than 8.0.0 (MariaDB newer than 10.0.4)"""
    threshold = ROLE_SUPPORT_THRESHOLDS.get(server.dialect, ROLE_SUPPORT_THRESHOLDS['mysql'])
    return LooseVersion(str(server.version)) > LooseVersion(threshold)


def require_on_grant(server):
    """MySQL 8 rejects REQUIRE on GRANT; older MySQL and MariaDB accept it"""
    if server.dialect == 'mariadb':
        return True
    if server.dialect == 'tidb':
        return False
    return not supports_roles(server)


def wants_tls(tls_option):
    return bool(tls_option) and tls_option.upper() != NO_TLS_OPTION


def show_grants_statement(principal):
    return "SHOW GRANTS FOR %s" % principal.sql_string()


def grant_statement(principal, reference, privileges, grant_option=False, tls_option=None, server=None):
    statement = "GRANT %s ON %s TO %s" % (', '.join(privileges), reference.sql_string(), principal.sql_string())
    if wants_tls(tls_option) and server is not None and require_on_grant(server):
        statement += " REQUIRE %s" % tls_option
    if grant_option:
        statement += " WITH GRANT OPTION"
    return statement


def role_grant_statement(principal, roles, admin_option=False):
    statement = "GRANT %s TO %s" % (', '.join(quote_role(r) for r in roles), principal.sql_string())
    if admin_option:
        statement += " WITH ADMIN OPTION"
    return statement


def revoke_statement(principal, reference, privileges, grant_option=False):
    items = list(privileges)
    if grant_option:
        # ADMIN OPTION of roles goes away with the role itself, GRANT OPTION does not
        items.append('GRANT OPTION')
    return "REVOKE %s ON %s FROM %s" % (', '.join(items), reference.sql_string(), principal.sql_string())


def revoke_all_statement(principal, reference):
    return "REVOKE ALL ON %s FROM %s" % (reference.sql_string(), principal.sql_string())


def revoke_grant_option_statement(principal, reference):
    return "REVOKE GRANT OPTION ON %s FROM %s" % (reference.sql_string(), principal.sql_string())


def role_revoke_statement(principal, roles):
    return "REVOKE %s FROM %s" % (', '.join(quote_role(r) for r in roles), principal.sql_string())


def role_revoke_admin_option_statement(principal, roles):
    # MariaDB only, MySQL has no way to drop ADMIN OPTION but keep the role
    return "REVOKE ADMIN OPTION FOR %s FROM %s" % (', '.join(quote_role(r) for r in roles), principal.sql_string())


def alter_require_statement(principal, tls_option):
    return "ALTER USER %s REQUIRE %s" % (principal.sql_string(), tls_option)


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------

def grant_id(principal, reference):
    database = format_database_name(reference.database) if reference is not None else ''
    if isinstance(principal, Role):
        return "%s:%s" % (principal.name, database)
    return "%s@%s:%s" % (principal.name, principal.host, database)


def parse_import_id(import_id):
    """
    Split user@host@database@table, with a trailing @ for grant option.

    Returns:
        tuple: (User, ObjectReference, grant_option)
    """
    parts = import_id.split('@')
    if len(parts) not in (4, 5):
        raise GrantError(
            "wrong ID format %s - expected user@host@database@table (and optionally ending @ "
            "to signify grant option) where some parts can be empty" % import_id)
    user, host, database, table = parts[:4]
    return User(user, host), ObjectReference(database, table), len(parts) == 5


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

class GrantReconciler(object):
    """
    Converges the grants of one principal to a declared state.

    Every public operation runs read, diff, write and confirm while holding
    the principal's lock from `locks`. The server version and dialect come
    in through `server` and are checked on each call.
    """

    def __init__(self, helper, server, locks, module=None, check_mode=False):
        self.helper = helper
        self.server = server
        self.locks = locks
        self.module = module
        self.check_mode = check_mode

    def _debug(self, msg):
        if self.module is not None:
            self.module.debug(msg)

    def _warn(self, msg):
        if self.module is not None:
            self.module.warn(msg)

    def _require_roles(self):
        if not supports_roles(self.server):
            raise UnsupportedOperationError(
                "role grants are not supported by this version of MySQL (%s %s); "
                "they require a version newer than %s" % (
                    self.server.dialect, self.server.version,
                    ROLE_SUPPORT_THRESHOLDS.get(self.server.dialect, ROLE_SUPPORT_THRESHOLDS['mysql'])))

    def _execute(self, statement, queries, ignore_missing=False):
        """
        Run one statement; returns False when a missing grant was ignored
        """
        queries.append(statement)
        if self.check_mode:
            return True
        try:
            self.helper.execute_query(statement, fetch=False)
        except Exception as e:
            errno = mysql_error_number(e)
            if not errno:
                raise
            if ignore_missing and errno in NONEXISTING_GRANT_ERRORS:
                self._debug("Grant already absent (%s): %s" % (statement, e))
                return False
            if errno in UNKNOWN_PRINCIPAL_ERRORS:
                raise UnknownPrincipalError("Error running SQL (%s): principal does not exist: %s" % (statement, e))
            raise StatementError(statement, e)

        for level, code, message in self.helper.show_warnings():
            self._warn("%s (%s) after %s: %s" % (level, code, statement, message))
        return True

    # -- reads ---------------------------------------------------------------

    def read_facts(self, principal):
        statement = show_grants_statement(principal)
        try:
            rows = self.helper.execute_query(statement)
        except Exception as e:
            errno = mysql_error_number(e)
            if not errno:
                raise
            if errno in NONEXISTING_GRANT_ERRORS:
                return []
            if errno in UNKNOWN_PRINCIPAL_ERRORS:
                raise UnknownPrincipalError("%s does not exist: %s" % (principal, e))
            raise StatementError(statement, e)

        facts = parse_grants([row[0] for row in rows], principal, self.module)
        self._debug("Parsed grants for %s: %s" % (principal, facts))
        return facts

    def _views(self, request):
        facts = self.read_facts(request.principal)
        return (aggregate(facts, request.principal, request.reference, request.grant_option),
                aggregate(facts, request.principal, request.reference, not request.grant_option))

    def read(self, request):
        """Current GrantView for the object and grant flag of request"""
        with self.locks.held(request.principal.lock_key()):
            return self._views(request)[0]

    def read_all(self, principal):
        with self.locks.held(principal.lock_key()):
            return collect_grants(self.read_facts(principal))

    # -- checks --------------------------------------------------------------

    def check_drift(self, request, view, previous=None):
        """
        Refuse to take over grants nobody declared.

        A non-empty grant on the same object with the same flag blocks
        unless it already equals the declared state or the caller's
        last-known state.
        """
        if request.roles:
            have = set(view.roles)
            if have and have != set(request.roles) and (previous is None or have != set(previous)):
                raise DriftError(
                    "user/role %s already has unmanaged grant for roles %s - import it first" % (
                        request.principal, sorted(have)))
            return

        if not view.privileges:
            return
        if privileges_equal(view.privileges, request.privileges):
            return
        if previous is not None and privileges_equal(view.privileges, previous):
            return
        raise DriftError(
            "user/role %s already has unmanaged grant to %s - import it first" % (
                request.principal, request.reference))

    def _apply_tls(self, request, queries):
        """
        ALTER USER ... REQUIRE next to a GRANT on servers that reject REQUIRE
        there. The requirement is not read back, so it is only applied when
        privileges are granted in the same run.
        """
        if not wants_tls(request.tls_option) or require_on_grant(self.server):
            return
        if isinstance(request.principal, Role):
            self._debug("Ignoring tls_option %s for role %s" % (request.tls_option, request.principal))
            return
        self._execute(alter_require_statement(request.principal, request.tls_option), queries)

    def _confirm(self, request, queries):
        if self.check_mode or not queries:
            return None
        view = self._views(request)[0]
        if request.roles:
            converged = set(view.roles) >= set(request.roles)
        else:
            converged = privileges_equal(view.privileges, request.privileges)
        if not converged:
            self._warn("Grants of %s did not converge: declared %s, server reports %s" % (
                request.principal, request.roles or request.privileges, view.roles or view.privileges))
        return view

    # -- writes --------------------------------------------------------------

    def create(self, request, previous=None):
        """
        Grant the declared state to a principal that is not managed yet
        """
        queries = []
        with self.locks.held(request.principal.lock_key()):
            if request.roles:
                self._require_roles()
            view = self._views(request)[0]
            self.check_drift(request, view, previous)

            if request.roles:
                self._execute(role_grant_statement(request.principal, request.roles, request.grant_option), queries)
            elif request.privileges:
                self._execute(grant_statement(
                    request.principal, request.reference, request.privileges,
                    request.grant_option, request.tls_option, self.server), queries)
            self._apply_tls(request, queries)

            confirmed = self._confirm(request, queries)
            return ReconcileResult(bool(queries), queries, confirmed or view)

    def update(self, request, old_privileges):
        """
        Move from the last-known privileges to the declared ones without
        reading first; REVOKE runs before GRANT.
        """
        queries = []
        with self.locks.held(request.principal.lock_key()):
            if request.roles:
                self._require_roles()
                diff = diff_roles(old_privileges, request.roles)
                if diff.to_revoke:
                    self._execute(role_revoke_statement(request.principal, diff.to_revoke), queries)
                if diff.to_grant:
                    self._execute(role_grant_statement(request.principal, diff.to_grant, request.grant_option), queries)
            else:
                diff = diff_privileges(old_privileges, request.privileges)
                if diff.to_revoke:
                    self._execute(revoke_statement(request.principal, request.reference, diff.to_revoke), queries)
                if diff.to_grant:
                    self._execute(grant_statement(
                        request.principal, request.reference, diff.to_grant,
                        request.grant_option, request.tls_option, self.server), queries)

            return ReconcileResult(bool(queries), queries, self._confirm(request, queries))

    def reconcile(self, request, unmanaged='adopt', previous=None):
        """
        Read what the server holds and converge it to request.

        Args:
            request: the declared GrantRequest
            unmanaged: 'adopt' takes over existing grants, 'fail' raises
                DriftError when they differ from the declared and the
                previous state
            previous: last-known privileges or roles of the caller

        Returns:
            ReconcileResult
        """
        queries = []
        with self.locks.held(request.principal.lock_key()):
            if request.roles:
                self._require_roles()
            view, other = self._views(request)
            if unmanaged == 'fail':
                self.check_drift(request, view, previous)

            if request.roles:
                self._reconcile_roles(request, view, other, queries)
            else:
                self._reconcile_privileges(request, view, other, queries)

            confirmed = self._confirm(request, queries)
            if confirmed is None:
                confirmed = view._replace(privileges=make_privs(view.privileges + other.privileges, request.privileges),
                                          roles=sorted(request.roles) if request.roles else view.roles)
            return ReconcileResult(bool(queries), queries, confirmed)

    def _reconcile_roles(self, request, view, other, queries):
        # Roles held with the other ADMIN OPTION flag are held too
        have = view.roles + [r for r in other.roles if r not in view.roles]
        diff = diff_roles(have, request.roles)
        self._debug("Role diff for %s: %s" % (request.principal, diff))
        if diff.to_revoke:
            self._execute(role_revoke_statement(request.principal, diff.to_revoke), queries)

        moved = sorted(r for r in set(request.roles) if r in other.roles and r not in view.roles)
        to_grant = diff.to_grant
        if moved:
            if request.grant_option:
                to_grant = sorted(set(to_grant) | set(moved))
            elif self.server.dialect == 'mariadb':
                self._execute(role_revoke_admin_option_statement(request.principal, moved), queries)
            else:
                self._execute(role_revoke_statement(request.principal, moved), queries)
                to_grant = sorted(set(to_grant) | set(moved))
        if to_grant:
            self._execute(role_grant_statement(request.principal, to_grant, request.grant_option), queries)

    def _reconcile_privileges(self, request, view, other, queries):
        # Grant option is held per object, so privileges filed under the other flag count as held too
        have = dedupe_privileges(view.privileges + other.privileges)
        diff = diff_privileges(have, request.privileges)
        self._debug("Privilege diff for %s on %s: %s" % (request.principal, request.reference, diff))

        if diff.to_revoke:
            self._execute(revoke_statement(request.principal, request.reference, diff.to_revoke), queries)

        if not request.grant_option and other.privileges:
            self._execute(revoke_grant_option_statement(request.principal, request.reference), queries)

        to_grant = diff.to_grant
        if request.grant_option and not view.privileges and diff.kept:
            # Privileges are there but without GRANT OPTION
            to_grant = diff.kept + diff.to_grant
        if to_grant:
            self._execute(grant_statement(
                request.principal, request.reference, to_grant,
                request.grant_option, request.tls_option, self.server), queries)
            self._apply_tls(request, queries)

    def _revoke(self, request, queries):
        if request.roles:
            statement = role_revoke_statement(request.principal, request.roles)
        elif request.privileges:
            statement = revoke_statement(
                request.principal, request.reference, request.privileges, request.grant_option)
        else:
            statement = revoke_all_statement(request.principal, request.reference)
        return self._execute(statement, queries, ignore_missing=True)

    def delete(self, request):
        """
        Revoke the declared privileges or roles; grants that are already
        gone count as success.
        """
        queries = []
        with self.locks.held(request.principal.lock_key()):
            if request.roles:
                self._require_roles()
            changed = self._revoke(request, queries)
            return ReconcileResult(changed, queries, None)

    def remove(self, request):
        """
        Converge to absent, revoking only what the server still holds
        """
        queries = []
        with self.locks.held(request.principal.lock_key()):
            if request.roles:
                self._require_roles()
            view, other = self._views(request)

            if request.roles:
                held = set(view.roles) | set(other.roles)
                target = request._replace(roles=[r for r in request.roles if r in held])
                pending = bool(target.roles)
            else:
                have = dedupe_privileges(view.privileges + other.privileges)
                present = diff_privileges(have, request.privileges).kept if request.privileges else have
                # view holds the requested flag, other the opposite one
                holds_option = bool(view.privileges) if request.grant_option else bool(other.privileges)
                target = request._replace(privileges=present,
                                          grant_option=request.grant_option and holds_option)
                pending = bool(present)

            if not pending:
                return ReconcileResult(False, [], view)
            changed = self._revoke(target, queries)
            return ReconcileResult(changed, queries, self._confirm_absent(target, queries))

    def _confirm_absent(self, request, queries):
        if self.check_mode or not queries:
            return None
        view = self._views(request)[0]
        return view._replace(privileges=[], roles=[]) if not (view.privileges or view.roles) else view
