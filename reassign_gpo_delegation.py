# reassign_gpo_delegation.py
#
# This script moves Group Policy delegation from one trustee to another across a set of GPOs. For every
# GPO that matches the optional name filters, it reads the current delegation and, only where the
# trustee to remove currently holds a permission, grants the trustee to add the permission level you
# choose and then sets the trustee to remove to None. GPOs where the trustee to remove has no
# delegation are left untouched.
#
# The processing order for each GPO is always add first, then remove. This ensures that if the script
# is interrupted, or the remove step fails, no GPO is left with neither trustee delegated. If the add
# step fails, the remove step for that GPO is skipped for the same reason. Failures on one GPO are
# reported and the script moves on to the next one. Re-run the script after investigating any failures.
#
# Use --dry-run to see exactly what would change. In this mode every Set-GPPermission call is sent with
# -WhatIf, so nothing is modified, but the classification and output are otherwise identical.
#
# This script is published under the GNU General Public License v3.0 and is intended as a working
# example. It is not a commercial product and is provided 'as-is' with no support. No warranty, express
# or implied, is provided, and the use of this script is at your own risk.
#
# This script requires Python 3.x and several common libraries. To install these dependencies, run
#     pip install requests pyyaml pypsrp
#
# All interaction with Active Directory is done through the GroupPolicy PowerShell module on a remote
# Windows host (typically a domain controller or a management server with RSAT installed), using
# PowerShell Remoting over WinRM. The account you connect with needs permission to read all GPOs and
# to edit the delegation (Edit settings, delete, modify security) on the GPOs you intend to change.
#
# This script reads configuration from a required configuration file named 'gpo_delegation.yaml'. Use
# any text editor to create this file based on the template below, then save in the same folder as this
# script (or point at it with --config).
'''
server_name: dc01.corp.example.com
username: CORP\\gpoadmin
password: yourpassword
'''
# There are also several optional configuration parameters which you can include to modify the
# default behavior of this script. Template below showing how to include these.
'''
server_name: dc01.corp.example.com          # Required
username: CORP\\gpoadmin                     # Required
password: yourpassword                      # Required
gpo_delegation:                             # Required only if including one or more of the below
    domain: corp.example.com                # Optional - passed as -Domain to every GroupPolicy cmdlet
    auth: negotiate                         # Optional - WinRM authentication (default negotiate)
    port: 5986                              # Optional - WinRM port (default 5986)
    output_file: gpo_delegation_log.csv     # Optional - overrides the default change log file name
'''
# Example usage:
#     python reassign_gpo_delegation.py --trustee-to-add "GPO Admins" --trustee-to-add-type Group
#         --permission-level GpoEditDeleteModifySecurity --trustee-to-remove jsmith
#         --trustee-to-remove-type User --prefix Finance --dry-run


## IMPORT REQUIRED LIBRARIES ##
import argparse
import csv
import datetime
import enum
import json
import os
import sys
from dataclasses import dataclass, field

import requests
import urllib3
import yaml
from pypsrp.client import Client
from pypsrp.exceptions import WinRMError


## DEFINE THE RECORDS USED AT RUNTIME ##

class TrusteeType(str, enum.Enum):
    USER = 'User'
    GROUP = 'Group'
    COMPUTER = 'Computer'


class PermissionLevel(str, enum.Enum):
    GPO_EDIT_DELETE_MODIFY_SECURITY = 'GpoEditDeleteModifySecurity'
    NONE = 'None'
    GPO_EDIT = 'GpoEdit'
    GPO_APPLY = 'GpoApply'
    GPO_READ = 'GpoRead'


class Classification(enum.Enum):
    BOTH_PRESENT = 'both trustees present'
    ONLY_REMOVE_PRESENT = 'only trustee to remove present'
    NEITHER_PRESENT = 'neither trustee present'


@dataclass(frozen=True)
class PolicyObject:
    id: str
    display_name: str

    def __str__(self):
        return f"'{self.display_name}' ({self.id})"


# Trustee type and permission are kept as the raw strings Get-GPPermission returns, which include
# values such as WellKnownGroup or GpoCustom that this script never writes
@dataclass(frozen=True)
class PermissionEntry:
    trustee_name: str
    trustee_type: str
    permission: str


@dataclass(frozen=True)
class TrusteeSpec:
    name: str
    trustee_type: TrusteeType
    permission_level: PermissionLevel = PermissionLevel.NONE


@dataclass(frozen=True)
class PermissionChange:
    gpo: PolicyObject
    trustee_name: str
    trustee_type: TrusteeType
    permission_level: PermissionLevel

    def describe(self):
        return f"{self.trustee_type.value} '{self.trustee_name}' -> {self.permission_level.value}"


@dataclass
class RunSummary:
    updated: list = field(default_factory=list)
    skipped: list = field(default_factory=list)
    failed: list = field(default_factory=list)
    unexpected: list = field(default_factory=list)
    changes: int = 0
    classifications: dict = field(default_factory=dict)


class GroupPolicyError(Exception):
    """Raised when the Group Policy service cannot complete a list, read or write."""


## CLIENT FOR THE GROUPPOLICY POWERSHELL MODULE ##

# Method that quotes a value as a single-quoted PowerShell string literal
# (PowerShell treats the typographic quotes U+2018 to U+201B as single quotes too)
def ps_quote(value):
    quoted = str(value)
    for quote in ("'", '\u2018', '\u2019', '\u201a', '\u201b'):
        quoted = quoted.replace(quote, quote * 2)
    return "'" + quoted + "'"


class GroupPolicyClient:
    """Runs GroupPolicy module cmdlets on a remote Windows host over PowerShell Remoting.

    Every call returns plain Python records parsed from ConvertTo-Json output. Any transport failure,
    PowerShell error record, or unparseable output is raised as GroupPolicyError.
    """

    def __init__(self, server_name, username, password, domain=None, auth='negotiate', port=5986,
                 verify_ssl=True, debug=False, client=None):
        self.server_name = server_name
        self.domain = domain
        self.debug = debug
        if client is None:
            client = Client(server_name, username=username, password=password, auth=auth, port=port,
                            ssl=True, cert_validation=verify_ssl)
        self.client = client

    def close(self):
        self.client.close()

    def _domain_parameter(self):
        if self.domain:
            return ' -Domain ' + ps_quote(self.domain)
        return ''

    def _run(self, script):
        script = 'Import-Module GroupPolicy -ErrorAction Stop\n' + script
        if self.debug:
            print('DEBUG: Sending to', self.server_name)
            print(script)
        try:
            output, streams, had_errors = self.client.execute_ps(script)
        except (requests.exceptions.RequestException, WinRMError) as e:
            raise GroupPolicyError(f'Unable to reach {self.server_name}: {e}') from e
        if had_errors:
            messages = [str(error) for error in streams.error] or ['unknown PowerShell error']
            raise GroupPolicyError('; '.join(messages))
        return output

    def _run_json(self, script):
        output = self._run(script)
        try:
            data = json.loads(output) if output and output.strip() else []
        except ValueError as e:
            raise GroupPolicyError(f'Unexpected output from {self.server_name}: {output!r}') from e
        # ConvertTo-Json collapses a single-item array into a bare object
        if isinstance(data, dict):
            data = [data]
        return data

    # Method that downloads the list of all GPOs in the domain
    def list_gpos(self):
        script = (
            'ConvertTo-Json -Compress -InputObject @(Get-GPO -All' + self._domain_parameter() + ' | '
            "Select-Object @{n='Id';e={$_.Id.ToString()}}, DisplayName)"
        )
        data = self._run_json(script)
        try:
            return [PolicyObject(id=item['Id'], display_name=item['DisplayName']) for item in data]
        except (KeyError, TypeError) as e:
            raise GroupPolicyError(f'Unexpected GPO record from {self.server_name}: {e}') from e

    # Method that downloads the delegation entries of a single GPO
    def get_permissions(self, gpo_id):
        script = (
            'ConvertTo-Json -Compress -InputObject @(Get-GPPermission -Guid ' + ps_quote(gpo_id) + ' -All'
            + self._domain_parameter() + ' | '
            "Select-Object @{n='TrusteeName';e={$_.Trustee.Name}}, "
            "@{n='TrusteeType';e={$_.Trustee.SidType.ToString()}}, "
            "@{n='Permission';e={$_.Permission.ToString()}})"
        )
        data = self._run_json(script)
        try:
            return [PermissionEntry(trustee_name=item['TrusteeName'] or '',
                                    trustee_type=item['TrusteeType'],
                                    permission=item['Permission'])
                    for item in data]
        except (KeyError, TypeError) as e:
            raise GroupPolicyError(f'Unexpected permission record for GPO {gpo_id}: {e}') from e

    # Method that sets (replaces) the permission of one trustee on one GPO
    def set_permission(self, gpo_id, trustee_name, trustee_type, level, simulate):
        script = (
            'Set-GPPermission -Guid ' + ps_quote(gpo_id)
            + ' -TargetName ' + ps_quote(trustee_name)
            + ' -TargetType ' + TrusteeType(trustee_type).value
            + ' -PermissionLevel ' + PermissionLevel(level).value
            + ' -Replace' + self._domain_parameter()
            + (' -WhatIf' if simulate else '')
            + ' | Out-Null'
        )
        self._run(script)


## DEFINE A SERIES OF METHODS USED AT RUNTIME ##

# Method that reads configuration from a YAML file on disk
def read_config(config_file_name='gpo_delegation.yaml'):

    print('Reading configuration from', config_file_name)
    if not os.path.exists(config_file_name):
        print('ERROR: The configuration file does not exist.',
              'Create a new text file using this template:\n\n'
              'server_name: your-management-server\nusername: DOMAIN\\your-user\npassword: your-password',
              f"\n\nThen save it in the same folder as this script as '{config_file_name}' and try again."
              )
        sys.exit(1)

    with open(config_file_name, 'r') as file:
        config = yaml.safe_load(file) or {}

    for key in ('server_name', 'username', 'password'):
        if config.get(key, None) is None:
            print('ERROR: Error reading', key, 'from', config_file_name)
            sys.exit(1)

    gpo_delegation_config = config.get('gpo_delegation', None) or {}
    settings = {
        'server_name': config['server_name'],
        'username': config['username'],
        'password': str(config['password']),
        'domain': gpo_delegation_config.get('domain', None),
        'auth': gpo_delegation_config.get('auth', 'negotiate'),
        'port': int(gpo_delegation_config.get('port', 5986)),
        'output_file': gpo_delegation_config.get('output_file', 'gpo_delegation_log.csv'),
    }

    print('\tServer name', f"'{settings['server_name']}'")
    print('\tUsername', f"'{settings['username']}'")
    if settings['domain']:
        print('\tDomain', f"'{settings['domain']}'")
    print('\tChange log', f"'{settings['output_file']}'")

    return settings

# Method that keeps only the GPOs whose display name matches the prefix and/or substring
def filter_gpos(gpos, prefix=None, substring=None):
    filtered = gpos
    if prefix:
        filtered = [gpo for gpo in filtered if gpo.display_name.lower().startswith(prefix.lower())]
    if substring:
        filtered = [gpo for gpo in filtered if substring.lower() in gpo.display_name.lower()]
    return filtered

# Method that lists the GPOs to be evaluated and asks the user to confirm
def confirm(gpos, prefix=None, substring=None, input_func=input):
    if not prefix and not substring:
        print('\nWARNING: No --prefix or --substring was provided. ALL', len(gpos),
              'GPOs in the domain will be evaluated.')
    else:
        print('\nThe following', len(gpos), 'GPOs will be evaluated:')
        for gpo in gpos:
            print('\t' + str(gpo))
    try:
        user_response = input_func('\nEnter Y to proceed: ')
    except EOFError:
        # stdin closed (piped or scheduled run), treat as declined
        print()
        return False
    return user_response == 'Y'

# Method that checks whether a trustee appears anywhere in a GPO's delegation (names compare case-insensitively)
def is_delegated(entries, trustee):
    return any(entry.trustee_name.lower() == trustee.name.lower() for entry in entries)

# Method that determines which of the two trustees are delegated on a GPO
def classify(entries, trustee_to_add, trustee_to_remove):
    add_present = is_delegated(entries, trustee_to_add)
    remove_present = is_delegated(entries, trustee_to_remove)
    if add_present and remove_present:
        return Classification.BOTH_PRESENT
    if remove_present:
        return Classification.ONLY_REMOVE_PRESENT
    return Classification.NEITHER_PRESENT

# Method that returns the ordered list of changes to make for a classification
def plan_changes(gpo, classification, trustee_to_add, trustee_to_remove):
    remove_change = PermissionChange(gpo, trustee_to_remove.name, trustee_to_remove.trustee_type,
                                     PermissionLevel.NONE)
    if classification is Classification.BOTH_PRESENT:
        return [remove_change]
    if classification is Classification.ONLY_REMOVE_PRESENT:
        add_change = PermissionChange(gpo, trustee_to_add.name, trustee_to_add.trustee_type,
                                      trustee_to_add.permission_level)
        return [add_change, remove_change]
    return []

# Method to initialize the CSV change log, avoiding duplicate headers
def initialize_csv(output_file):
    file_exists = os.path.isfile(output_file)
    with open(output_file, mode='a', newline='') as file:
        writer = csv.writer(file)
        if not file_exists:
            writer.writerow(['timestamp',
                             'gpo_name',
                             'gpo_id',
                             'trustee',
                             'trustee_type',
                             'permission_level',
                             'mode'  # LIVE or SIMULATED
                             ])

# Method to log a permission change in the CSV
def log_change(output_file, change, simulate):
    with open(output_file, mode='a', newline='') as file:
        writer = csv.writer(file)
        timestamp = datetime.datetime.now(datetime.timezone.utc).isoformat()
        mode = 'SIMULATED' if simulate else 'LIVE'
        writer.writerow([timestamp,
                         change.gpo.display_name,
                         change.gpo.id,
                         change.trustee_name,
                         change.trustee_type.value,
                         change.permission_level.value,
                         mode])

# Method that applies the changes for one GPO, returning False if a change failed
def apply_changes(client, changes, dry_run, summary, output_file=None):
    for index, change in enumerate(changes):
        verb = 'Simulating' if dry_run else 'Setting'
        print(f'\t{verb} {change.describe()}')
        try:
            client.set_permission(change.gpo.id, change.trustee_name, change.trustee_type,
                                  change.permission_level, simulate=dry_run)
        except GroupPolicyError as e:
            print(f'\tERROR: Failed to set {change.describe()} on {change.gpo}: {e}')
            remaining = len(changes) - index - 1
            if remaining:
                print('\tSkipping the remaining', remaining, 'change(s) for this GPO')
            return False
        summary.changes += 1
        if output_file:
            try:
                log_change(output_file, change, dry_run)
            except OSError as e:
                print(f'\tWARNING: Unable to write {change.describe()} to change log {output_file}: {e}')
    return True

# Method that evaluates a single GPO and applies whatever changes it needs
def remediate_gpo(client, gpo, trustee_to_add, trustee_to_remove, dry_run, summary, output_file=None):
    try:
        entries = client.get_permissions(gpo.id)
    except GroupPolicyError as e:
        print(f'\tERROR: Unable to read permissions for {gpo}: {e}')
        summary.failed.append(gpo)
        return

    if not is_delegated(entries, trustee_to_remove):
        print(f"\t'{trustee_to_remove.name}' has no delegation, skipping")
        summary.skipped.append(gpo)
        return

    classification = classify(entries, trustee_to_add, trustee_to_remove)
    summary.classifications[gpo.id] = classification
    changes = plan_changes(gpo, classification, trustee_to_add, trustee_to_remove)
    if not changes:
        print('\tWARNING: Unexpected state for', gpo, f'({classification.value}), no changes made')
        summary.unexpected.append(gpo)
        return

    print('\t' + classification.value.capitalize() + ',', len(changes), 'change(s) required')
    if apply_changes(client, changes, dry_run, summary, output_file):
        summary.updated.append(gpo)
    else:
        summary.failed.append(gpo)

# Method that runs the remediation across a list of GPOs
def remediate(client, gpos, trustee_to_add, trustee_to_remove, dry_run=False, output_file=None):
    summary = RunSummary()
    if output_file:
        try:
            initialize_csv(output_file)
        except OSError as e:
            print('WARNING: Unable to open change log', output_file, ':', e)
            print('WARNING: Continuing without a change log')
            output_file = None
    counter = 1
    for gpo in gpos:
        print(f'Processing GPO {counter} of {len(gpos)}: {gpo}')
        remediate_gpo(client, gpo, trustee_to_add, trustee_to_remove, dry_run, summary, output_file)
        counter += 1
    return summary

# Method that prints the results of a run
def print_summary(summary, dry_run=False):
    action = 'Would have updated' if dry_run else 'Successfully updated'
    print(f'\n{action}', len(summary.updated), 'GPOs with', summary.changes, 'permission change(s)')
    for gpo in summary.updated:
        print('\t' + str(gpo))
    print('\nSkipped', len(summary.skipped), 'GPOs where the trustee to remove has no delegation')
    if summary.unexpected:
        print('\nFound', len(summary.unexpected), 'GPOs in an unexpected state')
        for gpo in summary.unexpected:
            print('\t' + str(gpo))
    print('\nEncountered', len(summary.failed), 'failures')
    for gpo in summary.failed:
        print('\t' + str(gpo))

# Method that defines and parses the command line arguments
def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description='Grant one trustee a permission level on every GPO where another trustee is '
                    'delegated, then remove the other trustee.')
    trustee_types = [item.value for item in TrusteeType]
    parser.add_argument('--trustee-to-add', required=True, help='Name of the trustee to grant')
    parser.add_argument('--trustee-to-add-type', required=True, choices=trustee_types)
    parser.add_argument('--permission-level', required=True, choices=[item.value for item in PermissionLevel],
                        help='Permission level granted to the trustee to add')
    parser.add_argument('--trustee-to-remove', required=True, help='Name of the trustee to remove')
    parser.add_argument('--trustee-to-remove-type', required=True, choices=trustee_types)
    parser.add_argument('--prefix', help='Only evaluate GPOs whose name starts with this text')
    parser.add_argument('--substring', help='Only evaluate GPOs whose name contains this text')
    parser.add_argument('--dry-run', action='store_true', help='Send every change with -WhatIf')
    parser.add_argument('--skip-verification', action='store_true', help='Do not prompt before making changes')
    parser.add_argument('--config', default='gpo_delegation.yaml', help='Path to the YAML configuration file')
    parser.add_argument('--insecure', action='store_true', help='Disable SSL certificate verification (NOT for production)')
    parser.add_argument('--debug', action='store_true', help='Print every PowerShell script sent to the server')
    return parser.parse_args(argv)

# Method that disables certificate verification warnings and tells the user why that is dangerous
def warn_insecure():
    urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
    sys.stderr.write(
        "\n\033[91m"
        "!!! INSECURE MODE ENABLED !!!\n"
        "SSL certificate verification is DISABLED.\n"
        "\n"
        "This means:\n"
        "  • Your connection is not secure.\n"
        "  • An attacker on the network could intercept or modify traffic\n"
        "    and steal your credentials (man-in-the-middle attack).\n"
        "\n"
        "Use ONLY in trusted lab/dev environments or when testing with self-signed certificates.\n"
        "Re-run without --insecure for safe operation.\n"
        "\033[0m\n"
    )


## MAIN METHOD THAT GETS EXECUTED WHEN THIS SCRIPT IS RUN ##

def main(argv=None, client=None, input_func=input):

    args = parse_args(argv)
    trustee_to_add = TrusteeSpec(args.trustee_to_add, TrusteeType(args.trustee_to_add_type),
                                 PermissionLevel(args.permission_level))
    trustee_to_remove = TrusteeSpec(args.trustee_to_remove, TrusteeType(args.trustee_to_remove_type))

    settings = read_config(args.config)
    if args.insecure:
        warn_insecure()
    if client is None:
        client = GroupPolicyClient(settings['server_name'], settings['username'], settings['password'],
                                   domain=settings['domain'], auth=settings['auth'], port=settings['port'],
                                   verify_ssl=not args.insecure, debug=args.debug)

    if args.dry_run:
        print('INFO: Dry run enabled, every change will be sent with -WhatIf and nothing will be modified')

    try:
        return run(client, args, trustee_to_add, trustee_to_remove, settings['output_file'], input_func)
    finally:
        client.close()

# Method that lists, filters, confirms and remediates using an open client
def run(client, args, trustee_to_add, trustee_to_remove, output_file, input_func=input):
    try:
        gpos = client.list_gpos()
    except GroupPolicyError as e:
        print('ERROR: Unable to download the list of GPOs:', e)
        sys.exit(1)
    print(len(gpos), 'GPOs downloaded')

    gpos = filter_gpos(gpos, args.prefix, args.substring)
    print(len(gpos), 'GPOs remaining after applying filters')
    if not gpos:
        print('No GPOs matched the filters, nothing to do')
        return

    if not args.skip_verification:
        if not confirm(gpos, args.prefix, args.substring, input_func=input_func):
            print('Aborted, no changes were made')
            return

    print(f"\nReplacing {trustee_to_remove.trustee_type.value} '{trustee_to_remove.name}' with "
          f"{trustee_to_add.trustee_type.value} '{trustee_to_add.name}' ({trustee_to_add.permission_level.value})")
    summary = remediate(client, gpos, trustee_to_add, trustee_to_remove, dry_run=args.dry_run,
                        output_file=output_file)
    print_summary(summary, dry_run=args.dry_run)
    return summary


# When this .py file is run directly, invoke the main method defined above
if __name__ == '__main__':
    main()
