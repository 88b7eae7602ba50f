#!/usr/bin/python
# -*- coding: utf-8 -*-

# Copyright: (c) 2025, Cockroach Labs
# Apache License, Version 2.0 (see LICENSE or http://www.apache.org/licenses/LICENSE-2.0)

from __future__ import absolute_import, division, print_function
__metaclass__ = type

import hashlib
import threading
from contextlib import contextmanager


class LockReleaseError(RuntimeError):
    """Release of a key that is not held - a programming error, never recovered from"""


class KeyedMutex(object):
    """
    One exclusive lock per key.

    acquire(key) blocks until the caller holds the key exclusively.
    release(key) is only valid after a successful acquire(key) by the same
    caller. Entries are reference counted and dropped once nobody holds or
    waits for them, so the map only grows with concurrent use.
    """

    def __init__(self):
        self._mu = threading.Lock()
        self._locks = {}

    def acquire(self, key):
        with self._mu:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0, False]
                self._locks[key] = entry
            entry[1] += 1

        entry[0].acquire()
        with self._mu:
            entry[2] = True

    def release(self, key):
        with self._mu:
            entry = self._locks.get(key)
            if entry is None or not entry[2]:
                raise LockReleaseError("unlock of unlocked mutex: %s" % key)
            entry[2] = False
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]
            entry[0].release()

    def locked(self, key):
        with self._mu:
            entry = self._locks.get(key)
            return entry is not None and entry[2]

    def __len__(self):
        with self._mu:
            return len(self._locks)

    @contextmanager
    def held(self, key):
        self.acquire(key)
        try:
            yield
        finally:
            self.release(key)


class LockTimeoutError(Exception):
    """The server-side lock of a key could not be taken in time"""


# GET_LOCK names are limited to 64 characters
MAX_LOCK_NAME_LENGTH = 64


class ServerLocks(object):
    """
    Per-key lock shared by every session of the server.

    Each Ansible task runs in its own process, so an in-process lock alone
    never sees a competing task. held(key) takes the KeyedMutex of this
    process first, then the server's named lock (GET_LOCK) for the key, which
    serializes tasks across processes and controller hosts. The named lock
    belongs to the helper's connection and goes away with it.
    """

    def __init__(self, helper, timeout=30, prefix='ansible_mysql_grant'):
        self.helper = helper
        self.timeout = timeout
        self.prefix = prefix
        self._local = KeyedMutex()

    def lock_name(self, key):
        name = "%s:%s" % (self.prefix, key)
        if len(name) > MAX_LOCK_NAME_LENGTH:
            name = "%s:%s" % (self.prefix, hashlib.sha1(key.encode('utf-8')).hexdigest())
        return name

    @contextmanager
    def held(self, key):
        name = self.lock_name(key)
        with self._local.held(key):
            rows = self.helper.execute_query("SELECT GET_LOCK(%s, %s)", (name, self.timeout))
            # 1 = taken, 0 = timed out, NULL = error
            if not rows or rows[0][0] != 1:
                raise LockTimeoutError(
                    "could not take lock %s for %s within %s seconds" % (name, key, self.timeout))
            try:
                yield
            finally:
                self.helper.execute_query("SELECT RELEASE_LOCK(%s)", (name,))
