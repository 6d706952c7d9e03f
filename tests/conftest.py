from __future__ import annotations

import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from reassign_gpo_delegation import GroupPolicyError, PermissionEntry, PermissionLevel, PolicyObject


class FakeGroupPolicyClient:
    """In-memory stand-in for GroupPolicyClient that records every call in order."""

    def __init__(self, gpos, permissions, fail_list=False):
        self.gpos = list(gpos)
        self.permissions = {gpo_id: list(entries) for gpo_id, entries in permissions.items()}
        self.fail_list = fail_list
        self.fail_reads = set()
        self.fail_writes = set()
        self.calls = []
        self.closed = False

    def close(self):
        self.closed = True

    def list_gpos(self):
        self.calls.append(('list',))
        if self.fail_list:
            raise GroupPolicyError('The server is not operational')
        return list(self.gpos)

    def get_permissions(self, gpo_id):
        self.calls.append(('read', gpo_id))
        if gpo_id in self.fail_reads:
            raise GroupPolicyError('Access is denied')
        return list(self.permissions.get(gpo_id, []))

    def set_permission(self, gpo_id, trustee_name, trustee_type, level, simulate):
        self.calls.append(('write', gpo_id, trustee_name, trustee_type.value, level.value, simulate))
        if (gpo_id, trustee_name) in self.fail_writes:
            raise GroupPolicyError(f'Trustee {trustee_name} could not be found')
        if simulate:
            return
        entries = [entry for entry in self.permissions.get(gpo_id, [])
                   if entry.trustee_name.lower() != trustee_name.lower()]
        if level != PermissionLevel.NONE:
            entries.append(PermissionEntry(trustee_name, trustee_type.value, level.value))
        self.permissions[gpo_id] = entries

    @property
    def writes(self):
        return [call for call in self.calls if call[0] == 'write']


def entry(name, trustee_type='Group', permission='GpoEditDeleteModifySecurity'):
    return PermissionEntry(name, trustee_type, permission)


BASELINE = [
    entry('Domain Admins'),
    entry('Enterprise Admins'),
    entry('Authenticated Users', 'WellKnownGroup', 'GpoApply'),
]


@pytest.fixture()
def gpos():
    return [
        PolicyObject('11111111-1111-1111-1111-111111111111', 'Finance Workstations 2024'),
        PolicyObject('22222222-2222-2222-2222-222222222222', 'Finance Servers'),
        PolicyObject('33333333-3333-3333-3333-333333333333', 'Ops Baseline 2024'),
        PolicyObject('44444444-4444-4444-4444-444444444444', 'Default Domain Policy'),
    ]


@pytest.fixture()
def fake_client(gpos):
    return FakeGroupPolicyClient(gpos, {
        # only the trustee to remove
        gpos[0].id: BASELINE + [entry('jsmith', 'User', 'GpoEdit')],
        # both trustees
        gpos[1].id: BASELINE + [entry('jsmith', 'User', 'GpoEdit'), entry('GPO Admins', 'Group', 'GpoRead')],
        # neither trustee
        gpos[2].id: BASELINE,
        # only the trustee to add
        gpos[3].id: BASELINE + [entry('GPO Admins', 'Group', 'GpoEditDeleteModifySecurity')],
    })


@pytest.fixture()
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / 'gpo_delegation.yaml'
    path.write_text(
        'server_name: dc01.corp.example.com\n'
        'username: CORP\\gpoadmin\n'
        'password: hunter2\n'
        'gpo_delegation:\n'
        '    domain: corp.example.com\n'
        f'    output_file: {tmp_path / "changes.csv"}\n'
    )
    return path
