#!/usr/bin/env python
# -*- coding: utf-8 -*-

import os
import sys
import unittest

# Add the module_utils directory to the path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../../plugins/module_utils')))

from grants import (
    dedupe_privileges,
    diff_privileges,
    diff_roles,
    make_privs,
    normalize_privilege,
    privileges_equal,
)


class TestPrivilegeNormalization(unittest.TestCase):

    SAMPLES = [
        "SELECT",
        "select",
        "ALL",
        "all privileges",
        "AllPrivileges",
        "SELECT(b,a,c)",
        "SELECT (`c1`, `c2`)",
        "insert ( c3 ,c2 )",
        "SHOW DATABASES",
    ]

    def test_idempotent(self):
        for privilege in self.SAMPLES:
            once = normalize_privilege(privilege)
            self.assertEqual(normalize_privilege(once), once, privilege)

    def test_column_order_does_not_matter(self):
        self.assertEqual(normalize_privilege("SELECT(b,a,c)"), normalize_privilege("SELECT(a,c,b)"))
        self.assertEqual(normalize_privilege("SELECT(b,a,c)"), "SELECT(A, B, C)")

    def test_case_and_alias(self):
        self.assertEqual(normalize_privilege("all"), "ALL PRIVILEGES")
        self.assertEqual(normalize_privilege("ALL PRIVILEGES"), "ALL PRIVILEGES")
        self.assertEqual(normalize_privilege("AllPrivileges"), "ALL PRIVILEGES")

    def test_spaces_and_backticks_are_ignored(self):
        self.assertEqual(normalize_privilege("SELECT (`c1`, `c2`)"), normalize_privilege("select(c2,c1)"))
        self.assertEqual(normalize_privilege("SHOW DATABASES"), "SHOWDATABASES")

    def test_dedupe_keeps_first_spelling(self):
        self.assertEqual(dedupe_privileges(["Select", "SELECT", "insert"]), ["Select", "insert"])


class TestPrivilegeDiff(unittest.TestCase):

    def test_equal_sets_produce_no_statements(self):
        diff = diff_privileges(["SELECT (`c1`, `c2`)", "ALL PRIVILEGES"], ["all", "select(c2,c1)"])
        self.assertEqual(diff.to_grant, [])
        self.assertEqual(diff.to_revoke, [])

    def test_server_spelling_is_kept(self):
        self.assertEqual(make_privs(["SELECT(c1,c2)"], ["select(c2,c1)"]), ["SELECT(c1,c2)"])
        diff = diff_privileges(["SELECT(c1,c2)"], ["select(c2,c1)"])
        self.assertEqual(diff.kept, ["SELECT(c1,c2)"])

    def test_new_privileges_use_declared_spelling(self):
        self.assertEqual(make_privs(["SELECT"], ["select", "Update"]), ["SELECT", "Update"])

    def test_table_privilege_convergence(self):
        diff = diff_privileges(["SELECT", "INSERT"], ["SELECT", "UPDATE"])
        self.assertEqual(diff.to_grant, ["UPDATE"])
        self.assertEqual(diff.to_revoke, ["INSERT"])
        self.assertEqual(diff.kept, ["SELECT"])

    def test_role_convergence(self):
        diff = diff_roles({"r1", "r2"}, {"r2", "r3"})
        self.assertEqual(diff.to_grant, ["r3"])
        self.assertEqual(diff.to_revoke, ["r1"])

    def test_roles_compare_literally(self):
        diff = diff_roles(["Reader"], ["reader"])
        self.assertEqual(diff.to_grant, ["reader"])
        self.assertEqual(diff.to_revoke, ["Reader"])

    def test_privileges_equal(self):
        self.assertTrue(privileges_equal(["INSERT(a,b)", "select"], ["SELECT", "insert (`b`, `a`)"]))
        self.assertFalse(privileges_equal(["SELECT"], ["SELECT", "INSERT"]))


if __name__ == '__main__':
    unittest.main()
