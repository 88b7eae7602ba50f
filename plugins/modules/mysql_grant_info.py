#!/usr/bin/python
# -*- coding: utf-8 -*-
# pylint: disable=line-too-long, broad-exception-caught

# Copyright: (c) 2025, Cockroach Labs
# Apache License, Version 2.0 (see LICENSE or http://www.apache.org/licenses/LICENSE-2.0)

"""
Ansible module for reading the grants of a MySQL user or role.

Read-only: runs SHOW GRANTS for one principal and returns every privilege
and role membership it holds, grouped per object. With an import id it also
returns the single grant in the shape mysql_grant expects, which is how an
existing manual grant is taken under management.
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
    grant_id,
    grant_request,
    parse_import_id,
    principal_from_params,
    supports_roles,
)
from ansible_collections.rpunt.mysql.plugins.module_utils.locking import ServerLocks

ANSIBLE_METADATA = {
    "metadata_version": "1.1",
    "status": ["preview"],
    "supported_by": "community",
}

DOCUMENTATION = r"""
---
module: mysql_grant_info
short_description: Gather the grants of a MySQL user or role
description:
  - Run SHOW GRANTS for a user or role and return the parsed grants
  - Partial revokes are reported as warnings and left out
options:
  user:
    description:
      - Name of the user
    type: str
  host:
    description:
      - Host part of the user
    default: localhost
    type: str
  role:
    description:
      - Name of the role
    type: str
  import_id:
    description:
      - Grant identifier in the form C(user@host@database@table), with a
        trailing C(@) for a grant WITH GRANT OPTION
      - Parts may be empty
    type: str
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
      - Path to the server socket
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
- name: List the grants of a user
  mysql_grant_info:
    user: app
    host: "%"
  register: app_grants

- name: Look up one grant to take it under management
  mysql_grant_info:
    import_id: "app@%@shop@orders@"
  register: existing
"""

RETURN = r"""
server:
  description: Version and dialect of the connected server
  returned: always
  type: dict
  sample: {"version": "8.0.36", "version_string": "8.0.36", "dialect": "mysql", "supports_roles": true}
grants:
  description: Privileges per object and role memberships of the principal
  returned: always
  type: list
  sample: [
    {"database": "shop", "table": "orders", "privileges": ["SELECT", "INSERT"], "grant_option": false},
    {"roles": ["app_read"], "admin_option": false}
  ]
grant:
  description: The grant named by import_id
  returned: when import_id is given
  type: dict
  sample: {"id": "app@%:`shop`", "user": "app", "host": "%", "database": "shop",
           "table": "orders", "grant_option": true, "privileges": ["SELECT"]}
"""


def main():
    """
    Main entry point for the MySQL grant info module.

    Connects, resolves the server version and dialect, and returns the
    grants of the requested user or role. Nothing is changed on the server.
    """
    module_args = mysql_common_argument_spec()
    module_args.update(
        user=dict(type='str'),
        host=dict(type='str', default='localhost'),
        role=dict(type='str'),
        import_id=dict(type='str'),
        lock_timeout=dict(type='int', default=30),
    )

    module = AnsibleModule(
        argument_spec=module_args,
        supports_check_mode=True,
        mutually_exclusive=[['user', 'role', 'import_id']],
        required_one_of=[['user', 'role', 'import_id']],
    )

    helper = MySQLHelper(module)
    result = {
        'changed': False,
    }

    try:
        server = helper.server
        result['server'] = server.to_dict()
        result['server']['supports_roles'] = supports_roles(server)

        locks = ServerLocks(helper, module.params['lock_timeout'])
        reconciler = GrantReconciler(helper, server, locks, module=module, check_mode=True)

        if module.params['import_id']:
            principal, reference, grant_option = parse_import_id(module.params['import_id'])
            view = reconciler.read(grant_request(principal, reference, grant_option=grant_option))
            result['grant'] = {
                'id': grant_id(principal, reference),
                'user': principal.name,
                'host': principal.host,
                'database': reference.database,
                'table': reference.table,
                'grant_option': grant_option,
                'privileges': view.privileges,
            }
        else:
            principal = principal_from_params(
                module.params['user'], module.params['host'], module.params['role'])

        result['grants'] = reconciler.read_all(principal)

    except GrantError as e:
        module.fail_json(msg=to_native(e), exception=traceback.format_exc())
    except Exception as e:
        module.fail_json(msg=str(e), exception=traceback.format_exc())
    finally:
        helper.close()

    module.exit_json(**result)


if __name__ == '__main__':
    main()
