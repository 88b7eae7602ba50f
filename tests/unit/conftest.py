# -*- coding: utf-8 -*-

"""
Make the checkout importable as the rpunt.mysql collection.

The modules import their module_utils through
ansible_collections.rpunt.mysql, so the repository is linked into a
temporary ansible_collections tree for the test session.
"""

import os
import shutil
import sys
import tempfile

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '../..'))

COLLECTIONS_PATH = tempfile.mkdtemp(prefix='rpunt_mysql_')
os.makedirs(os.path.join(COLLECTIONS_PATH, 'ansible_collections', 'rpunt'))
os.symlink(ROOT, os.path.join(COLLECTIONS_PATH, 'ansible_collections', 'rpunt', 'mysql'))
sys.path.insert(0, COLLECTIONS_PATH)


def pytest_unconfigure(config):
    shutil.rmtree(COLLECTIONS_PATH, ignore_errors=True)
