#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# pylint: disable=line-too-long

"""
Test script to validate the MySQL grant Ansible modules.
This script performs basic syntax and structure checks on the modules.
"""

import os
import re
import unittest
import glob

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '../..'))
MODULES_DIR = os.path.join(ROOT, 'plugins/modules')
MODULE_UTILS_DIR = os.path.join(ROOT, 'plugins/module_utils')


def read_source(path):
    with open(path, 'r', encoding='utf-8') as f:
        return f.read()


class TestMySQLModules(unittest.TestCase):
    """Test the MySQL grant modules for syntax and structure."""

    def test_module_compile(self):
        """Test that all modules and module_utils compile without syntax errors."""
        files = glob.glob(os.path.join(MODULE_UTILS_DIR, '*.py')) + glob.glob(os.path.join(MODULES_DIR, '*.py'))
        self.assertTrue(files)
        for module_file in files:
            try:
                compile(read_source(module_file), module_file, 'exec')
            except SyntaxError as e:
                self.fail(f"Syntax error in {module_file}: {e}")

    def test_documentation_exists(self):
        """Test that all modules carry DOCUMENTATION, EXAMPLES and RETURN."""
        for module_file in glob.glob(os.path.join(MODULES_DIR, '*.py')):
            content = read_source(module_file)
            for keyword in ('DOCUMENTATION', 'EXAMPLES', 'RETURN', 'short_description:', 'description:'):
                self.assertIn(keyword, content, f"{module_file} is missing {keyword}")

    def test_argument_spec_structure(self):
        """Test that modules build their argument_spec from the shared connection options."""
        for module_file in glob.glob(os.path.join(MODULES_DIR, '*.py')):
            content = read_source(module_file)
            self.assertIn('module_args = mysql_common_argument_spec()', content)
            self.assertIn('argument_spec=module_args', content)
            self.assertIn('AnsibleModule(', content)
            self.assertIn('supports_check_mode=True', content)

    def test_grant_module_options(self):
        """Test the options specific to mysql_grant."""
        content = read_source(os.path.join(MODULES_DIR, 'mysql_grant.py'))
        self.assertTrue(re.search(r"state=dict\(.*choices=\['present', 'absent'\]", content))
        self.assertTrue(re.search(r"grant_option=dict\(.*aliases=\['grant'\]", content))
        self.assertTrue(re.search(r"unmanaged=dict\(.*choices=\['adopt', 'fail'\]", content))
        self.assertIn("['privileges', 'roles']", content)
        self.assertIn("['user', 'role']", content)

    def test_info_module_options(self):
        """Test the options specific to mysql_grant_info."""
        content = read_source(os.path.join(MODULES_DIR, 'mysql_grant_info.py'))
        self.assertIn("import_id=dict(type='str')", content)
        self.assertIn("['user', 'role', 'import_id']", content)

    def test_module_main_docstrings(self):
        """Test that all modules have docstrings for their main() functions."""
        for module_file in glob.glob(os.path.join(MODULES_DIR, '*.py')):
            main_with_docstring = re.search(r'def\s+main\s*\(\s*\)\s*:\s*\n\s*"""', read_source(module_file))
            self.assertIsNotNone(main_with_docstring,
                                 f"{module_file} is missing a docstring for its main() function")


if __name__ == '__main__':
    unittest.main()
