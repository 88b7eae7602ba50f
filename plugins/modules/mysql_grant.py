#!/usr/bin/python
# -*- coding: utf-8 -*-
# pylint: disable=line-too-long, broad-exception-caught

# Copyright: (c) 2025, Cockroach Labs
# Apache License, Version 2.0 (see LICENSE or http://www.apache.org/licenses/LICENSE-2.0)

"""
Ansible module for managing grants on MySQL compatible servers.

Privileges on a database, table, procedure or function, or role
memberships, are declared for one user or role. The module reads the
current grants with SHOW GRANTS, works out the smallest set of GRANT and
REVOKE statements and runs them, so repeated runs converge and report no
change.
"""

import traceback
from ansible.module_utils.basic import AnsibleModule
from ansible.module_utils._text import to_native
from ansible_collections.rpunt.mysql.plugins.module_utils.mysql_server import (
    MySQLHelper,
    mysql_common_argument_spec,
)
from ansible_collections.rpunt.mysql.plugins.module_utils.grants import (
    GrantError,
    GrantReconciler,
    ObjectReference,
    UnknownPrincipalError,
    grant_id,
    grant_request,
    principal_from_params,
)
from ansible_collections.rpunt.mysql.plugins.module_utils.locking import ServerLocks

ANSIBLE_METADATA = {
    "metadata_version": "1.1",
    "status": ["preview"],
    "supported_by": "community",
}

DOCUMENTATION = r"""
---
module: mysql_grant
short_description: Manage MySQL privileges and role memberships
description:
  - Grant or revoke privileges on databases, tables, procedures and functions
  - Grant or revoke roles to users and roles (MySQL 8.0 and newer, MariaDB 10.0.5 and newer)
  - Privileges are compared independently of case, spacing and column order,
    so C(SELECT(b,a)) and C(select (a, b)) are the same privilege
  - Lines of SHOW GRANTS that cannot be parsed fail the task instead of being ignored
options:
  state:
    description:
      - Whether the privileges or roles should be present or absent
    choices: ["present", "absent"]
    default: present
    type: str
  user:
    description:
      - Name of the user to grant to
      - Mutually exclusive with I(role)
    type: str
  host:
    description:
      - Host part of the user
    default: localhost
    type: str
  role:
    description:
      - Name of the role to grant to
      - Mutually exclusive with I(user)
    type: str
  database:
    description:
      - Database the privileges apply to, C(*) for all databases
      - C(PROCEDURE db) or C(FUNCTION db) with the routine name in I(table),
        or C(PROCEDURE db.routine), grant on a stored routine
    default: "*"
    type: str
  table:
    description:
      - Table the privileges apply to, C(*) for all tables
    default: "*"
    type: str
  privileges:
    description:
      - List of privileges, e.g. C(SELECT), C(INSERT(col1,col2)), C(ALL)
      - Mutually exclusive with I(roles)
    type: list
    elements: str
  roles:
    description:
      - List of roles to grant, C(name) or C(name@host) for a role with a host other than C(%)
      - Mutually exclusive with I(privileges)
    type: list
    elements: str
  grant_option:
    description:
      - Grant WITH GRANT OPTION, or WITH ADMIN OPTION for roles
    type: bool
    default: false
    aliases: ["grant"]
  tls_option:
    description:
      - TLS requirement of the user, e.g. C(SSL) or C(X509)
      - Added to the GRANT statement on servers that accept it there,
        applied with ALTER USER otherwise
      - Applied only together with the GRANT statements a run issues; a
        change of I(tls_option) alone does not trigger a change, revoke and
        re-grant to apply a new requirement
      - Ignored for roles
    type: str
    default: NONE
  unmanaged:
    description:
      - What to do when the user already holds a different grant on the object
      - C(adopt) converges the existing grant to the declared one
      - C(fail) stops unless the existing grant equals I(privileges) or I(previous_privileges)
    choices: ["adopt", "fail"]
    default: adopt
    type: str
  previous_privileges:
    description:
      - Privileges or roles the grant had after the last successful run
      - Used with I(unmanaged=fail) to tell earlier managed state from manual changes
    type: list
    elements: str
  login_host:
    description:
      - Database host address
    default: localhost
    type: str
  login_port:
    description:
      - Database port number
    default: 3306
    type: int
  login_user:
    description:
      - Database username
    default: root
    type: str
  login_password:
    description:
      - Database user password
    type: str
  login_unix_socket:
    description:
      - Path to the server socket, used instead of host and port
    type: str
  login_database:
    description:
      - Database to select after connecting
    type: str
  ssl_ca:
    description:
      - Path to CA certificate file
    type: path
  ssl_cert:
    description:
      - Path to client certificate file
    type: path
  ssl_key:
    description:
      - Path to client private key file
    type: path
  lock_timeout:
    description:
      - Seconds to wait for the server-side lock (GET_LOCK) that serializes
        tasks working on the same user or role
    default: 30
    type: int
  connect_timeout:
    description:
      - Database connection timeout in seconds
    default: 30
    type: int
requirements:
  - PyMySQL
author:
  - "Ryan Punt (@rpunt)"
"""

EXAMPLES = r"""
# Grant SELECT and INSERT on a table
- name: Grant table privileges
  mysql_grant:
    user: app
    host: "%"
    database: shop
    table: orders
    privileges:
      - SELECT
      - INSERT

# Column level privileges
- name: Grant column privileges
  mysql_grant:
    user: reporting
    host: "10.0.0.%"
    database: shop
    table: customers
    privileges:
      - SELECT(id, name, country)

# Execute a stored procedure
- name: Grant EXECUTE on a procedure
  mysql_grant:
    user: app
    database: PROCEDURE shop
    table: close_orders
    privileges:
      - EXECUTE

# Role membership with admin option
- name: Grant roles to a user
  mysql_grant:
    user: alice
    host: "%"
    roles:
      - app_read
      - app_write
    grant_option: true

# Refuse to overwrite manually granted privileges
- name: Grant all privileges on a database
  mysql_grant:
    role: analytics_admin
    database: analytics
    privileges:
      - ALL
    unmanaged: fail

# Revoke privileges
- name: Revoke privileges
  mysql_grant:
    user: app
    host: "%"
    database: shop
    table: orders
    privileges:
      - INSERT
    state: absent
"""

RETURN = r"""
changed:
  description: Whether any grant was changed
  returned: always
  type: bool
  sample: true
queries:
  description: GRANT, REVOKE and ALTER statements executed, or that would be executed in check mode
  returned: always
  type: list
  sample: ["REVOKE INSERT ON `shop`.`orders` FROM 'app'@'%'", "GRANT UPDATE ON `shop`.`orders` TO 'app'@'%'"]
privileges:
  description: Privileges held on the object, spelled the way the server reports them
  returned: success
  type: list
  sample: ["SELECT", "UPDATE"]
roles:
  description: Roles held by the user or role
  returned: success
  type: list
  sample: ["app_read"]
grant_option:
  description: Whether the grant carries GRANT OPTION or ADMIN OPTION
  returned: success
  type: bool
id:
  description: Identifier of the grant
  returned: success
  type: str
  sample: "app@%:`shop`"
server:
  description: Version and dialect of the connected server
  returned: success
  type: dict
  sample: {"version": "8.0.36", "version_string": "8.0.36", "dialect": "mysql"}
"""


def main():
    """
    Main entry point for the MySQL grant module.

    Builds the declared grant from the module parameters, reads the grants
    the principal holds and converges them:

    - state=present grants what is missing and revokes privileges or roles
      that are no longer declared
    - state=absent revokes the declared privileges or roles that are still
      held; grants that are already gone are not an error

    In check mode the statements are computed and returned without being
    executed.
    """
    module_args = mysql_common_argument_spec()
    module_args.update(
        state=dict(type='str', default='present', choices=['present', 'absent']),
        user=dict(type='str'),
        host=dict(type='str', default='localhost'),
        role=dict(type='str'),
        database=dict(type='str', default='*'),
        table=dict(type='str', default='*'),
        privileges=dict(type='list', elements='str'),
        roles=dict(type='list', elements='str'),
        grant_option=dict(type='bool', default=False, aliases=['grant']),
        tls_option=dict(type='str', default='NONE'),
        unmanaged=dict(type='str', default='adopt', choices=['adopt', 'fail']),
        previous_privileges=dict(type='list', elements='str'),
        lock_timeout=dict(type='int', default=30),
    )

    module = AnsibleModule(
        argument_spec=module_args,
        supports_check_mode=True,
        mutually_exclusive=[['user', 'role'], ['privileges', 'roles']],
        required_one_of=[['user', 'role']],
    )

    state = module.params['state']

    if state == 'present' and not (module.params['privileges'] or module.params['roles']):
        module.fail_json(msg="one of privileges or roles is required when state is present")

    helper = MySQLHelper(module)
    result = {
        'changed': False,
        'queries': [],
    }

    try:
        principal = principal_from_params(
            module.params['user'], module.params['host'], module.params['role'])
        request = grant_request(
            principal,
            ObjectReference(module.params['database'], module.params['table']),
            privileges=module.params['privileges'],
            roles=module.params['roles'],
            grant_option=module.params['grant_option'],
            tls_option=module.params['tls_option'],
        )

        server = helper.server
        locks = ServerLocks(helper, module.params['lock_timeout'])
        reconciler = GrantReconciler(helper, server, locks, module=module, check_mode=module.check_mode)

        if state == 'present':
            outcome = reconciler.reconcile(
                request,
                unmanaged=module.params['unmanaged'],
                previous=module.params['previous_privileges'],
            )
        else:
            try:
                outcome = reconciler.remove(request)
            except UnknownPrincipalError as e:
                module.debug("Nothing to revoke: %s" % to_native(e))
                outcome = None

        result['id'] = grant_id(principal, request.reference)
        result['server'] = server.to_dict()
        if outcome is not None:
            result['changed'] = outcome.changed
            result['queries'] = outcome.queries
        view = outcome.view if outcome is not None else None
        result['privileges'] = list(view.privileges) if view is not None and not request.roles else []
        result['roles'] = list(view.roles) if view is not None and request.roles else []
        result['grant_option'] = request.grant_option if view is not None and state == 'present' else False

    except GrantError as e:
        module.fail_json(msg=to_native(e), exception=traceback.format_exc(), **result)
    except Exception as e:
        module.fail_json(msg="Error managing grants: %s" % to_native(e), exception=traceback.format_exc(), **result)
    finally:
        helper.close()

    module.exit_json(**result)


if __name__ == '__main__':
    main()
