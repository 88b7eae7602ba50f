#!/usr/bin/python
# -*- coding: utf-8 -*-

from __future__ import absolute_import, division, print_function

import os
import sys
import pytest

# Add the module_utils directory to path so we can import it
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../../plugins/module_utils')))

from grants import (
    GrantError,
    ObjectReference,
    Role,
    User,
    alter_require_statement,
    format_database_name,
    format_table_name,
    grant_id,
    grant_request,
    grant_statement,
    parse_import_id,
    principal_from_params,
    quote_role,
    require_on_grant,
    revoke_all_statement,
    revoke_statement,
    role_grant_statement,
    role_revoke_admin_option_statement,
    role_revoke_statement,
    show_grants_statement,
    supports_roles,
)
from mysql_server import parse_server_version


MYSQL_57 = parse_server_version("5.7.30-log")
MYSQL_8 = parse_server_version("8.0.36")
MARIADB_10 = parse_server_version("10.11.6-MariaDB-1:10.11.6+maria~ubu2204")
TIDB = parse_server_version("5.7.25-TiDB-v7.1.0")


def test_principal_sql_strings():
    assert User("app", "%").sql_string() == "'app'@'%'"
    assert Role("reporting").sql_string() == "'reporting'"
    assert User("app", "localhost").lock_key() == "'app'@'localhost'"


def test_principal_from_params():
    assert principal_from_params("app", "%", None) == User("app", "%")
    assert principal_from_params(None, "localhost", "reporting") == Role("reporting")
    with pytest.raises(GrantError):
        principal_from_params(None, None, None)


@pytest.mark.parametrize("database,expected", [
    ("*", "*"),
    ("shop", "`shop`"),
    ("`shop`", "`shop`"),
    ("PROCEDURE shop", "PROCEDURE `shop`"),
    ("function shop.total", "function `shop`.`total`"),
])
def test_format_database_name(database, expected):
    assert format_database_name(database) == expected


def test_format_table_name():
    assert format_table_name("") == "*"
    assert format_table_name("*") == "*"
    assert format_table_name("orders") == "`orders`"


def test_object_reference_is_table_or_callable():
    table = ObjectReference("shop", "orders")
    assert not table.is_callable
    assert table.sql_string() == "`shop`.`orders`"

    procedure = ObjectReference("PROCEDURE shop", "close_orders")
    assert procedure.is_callable
    assert procedure.callable_type == "PROCEDURE"
    assert procedure.sql_string() == "PROCEDURE `shop`.`close_orders`"

    function = ObjectReference("Function shop.total")
    assert function.callable_type == "FUNCTION"
    assert function.sql_string() == "FUNCTION `shop`.`total`"

    assert ObjectReference("*", None).sql_string() == "*.*"


def test_grant_statement():
    statement = grant_statement(User("app", "%"), ObjectReference("shop", "orders"), ["SELECT", "INSERT(a,b)"])
    assert statement == "GRANT SELECT, INSERT(a,b) ON `shop`.`orders` TO 'app'@'%'"


def test_grant_statement_with_grant_option():
    statement = grant_statement(Role("admin"), ObjectReference("shop"), ["ALL"], grant_option=True, server=MYSQL_8)
    assert statement == "GRANT ALL ON `shop`.* TO 'admin' WITH GRANT OPTION"


def test_require_only_where_grant_accepts_it():
    reference = ObjectReference("shop")
    old = grant_statement(User("app", "%"), reference, ["SELECT"], True, "SSL", MYSQL_57)
    assert old == "GRANT SELECT ON `shop`.* TO 'app'@'%' REQUIRE SSL WITH GRANT OPTION"

    new = grant_statement(User("app", "%"), reference, ["SELECT"], False, "SSL", MYSQL_8)
    assert "REQUIRE" not in new

    none = grant_statement(User("app", "%"), reference, ["SELECT"], False, "NONE", MYSQL_57)
    assert "REQUIRE" not in none

    assert require_on_grant(MARIADB_10)
    assert not require_on_grant(TIDB)
    assert alter_require_statement(User("app", "%"), "X509") == "ALTER USER 'app'@'%' REQUIRE X509"


def test_revoke_statements():
    principal = User("app", "%")
    reference = ObjectReference("shop", "orders")
    assert revoke_statement(principal, reference, ["INSERT"]) == "REVOKE INSERT ON `shop`.`orders` FROM 'app'@'%'"
    assert revoke_statement(principal, reference, ["SELECT", "INSERT"], grant_option=True) == \
        "REVOKE SELECT, INSERT, GRANT OPTION ON `shop`.`orders` FROM 'app'@'%'"
    assert revoke_all_statement(principal, reference) == "REVOKE ALL ON `shop`.`orders` FROM 'app'@'%'"


def test_role_statements():
    principal = User("alice", "%")
    assert role_grant_statement(principal, ["r1", "r2"]) == "GRANT 'r1', 'r2' TO 'alice'@'%'"
    assert role_grant_statement(principal, ["dba"], admin_option=True) == "GRANT 'dba' TO 'alice'@'%' WITH ADMIN OPTION"
    assert role_revoke_statement(principal, ["r1"]) == "REVOKE 'r1' FROM 'alice'@'%'"
    assert show_grants_statement(Role("r1")) == "SHOW GRANTS FOR 'r1'"


@pytest.mark.parametrize("server,expected", [
    (MYSQL_57, False),
    (parse_server_version("8.0.0"), False),
    (MYSQL_8, True),
    (MARIADB_10, True),
    (parse_server_version("10.0.4-MariaDB"), False),
    (TIDB, False),
])
def test_supports_roles(server, expected):
    assert supports_roles(server) is expected


def test_grant_request_exclusivity():
    with pytest.raises(GrantError):
        grant_request(User("app", "%"), ObjectReference("shop"), privileges=["SELECT"], roles=["r1"])

    request = grant_request(User("app", "%"), ObjectReference("shop"), roles=["r1"])
    assert request.reference is None
    assert request.tls_option == "NONE"


def test_import_id():
    principal, reference, grant_option = parse_import_id("app@%@shop@orders@")
    assert principal == User("app", "%")
    assert reference == ObjectReference("shop", "orders")
    assert grant_option is True

    _, reference, grant_option = parse_import_id("app@localhost@shop@")
    assert reference.table == "*"
    assert grant_option is False

    with pytest.raises(GrantError) as excinfo:
        parse_import_id("app@shop")
    assert "wrong ID format" in str(excinfo.value)


def test_grant_id():
    assert grant_id(User("app", "%"), ObjectReference("shop")) == "app@%:`shop`"
    assert grant_id(Role("reporting"), ObjectReference("*")) == "reporting:*"


def test_roles_with_host():
    principal = User("alice", "%")
    assert quote_role("r1") == "'r1'"
    assert quote_role("r1@localhost") == "'r1'@'localhost'"
    assert role_revoke_statement(principal, ["r1@localhost"]) == "REVOKE 'r1'@'localhost' FROM 'alice'@'%'"
    assert role_grant_statement(principal, ["r1@localhost"], admin_option=True) == \
        "GRANT 'r1'@'localhost' TO 'alice'@'%' WITH ADMIN OPTION"
    assert role_revoke_admin_option_statement(principal, ["dba"]) == "REVOKE ADMIN OPTION FOR 'dba' FROM 'alice'@'%'"
