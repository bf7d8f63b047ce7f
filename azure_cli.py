"""
Thin wrapper around the Azure CLI.

Every call the lab makes against the Azure control plane goes through
AzureCli so the workflows can be exercised against a fake in tests.
"""

import json
import os
import shutil
import subprocess
import tempfile
from pathlib import Path

from rich.console import Console

from errors import ContextError, RemoteCallError, StepResult

console = Console()

MANAGED_APP_RESOURCE_TYPE = "Microsoft.Solutions/applications"

# Parameter names whose values never get echoed to the terminal.
SECRET_PARAMETERS = ("adminPassword",)


def check_az_installed() -> tuple[bool, str | None]:
    """Return (installed, version line) for the az CLI."""
    if not shutil.which("az"):
        return False, None
    try:
        result = subprocess.run(['az', 'version', '-o', 'json'], capture_output=True, text=True, timeout=30)
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return False, None
    if result.returncode != 0:
        return False, None
    try:
        return True, json.loads(result.stdout).get('azure-cli', 'unknown')
    except json.JSONDecodeError:
        return True, result.stdout.strip().split('\n')[0]


def run_preflight_checks(required_files: tuple = ()) -> bool:
    """Check the az CLI and any local artifacts a workflow needs."""
    all_passed = True
    console.print("[bold]Pre-flight Checks[/bold]")
    console.print()

    installed, version = check_az_installed()
    if installed:
        console.print(f"  [green]✓[/green] az: [dim]{version}[/dim]")
    else:
        console.print("  [red]✗[/red] az: [red]not found[/red]")
        console.print("    [dim]Install: https://learn.microsoft.com/cli/azure/install-azure-cli[/dim]")
        all_passed = False

    for path in required_files:
        if Path(path).is_file():
            console.print(f"  [green]✓[/green] {path}")
        else:
            console.print(f"  [red]✗[/red] {path}: [red]not found[/red]")
            all_passed = False

    console.print()
    if not all_passed:
        console.print("[red]❌ Pre-flight checks failed.[/red]")
    return all_passed


def mask_command(cmd: list[str]) -> str:
    masked = []
    for part in cmd:
        key, sep, _ = part.partition('=')
        masked.append(f"{key}=****" if sep and key in SECRET_PARAMETERS else part)
    return ' '.join(masked)


def managed_resource_group_id(subscription_id: str, mrg_name: str) -> str:
    return f"/subscriptions/{subscription_id}/resourceGroups/{mrg_name}"


class AzureCli:
    """Runs az commands and maps failures to RemoteCallError."""

    def __init__(self, executable: str = "az", quiet: bool = False):
        self.executable = executable
        self.quiet = quiet

    def run(self, *args: str) -> str:
        cmd = [self.executable, *args]
        if not self.quiet:
            console.print(f"[cyan]→ {mask_command(cmd)}[/cyan]")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise RemoteCallError(cmd, 127, str(e)) from e
        if result.returncode != 0:
            raise RemoteCallError(cmd, result.returncode, result.stderr)
        return result.stdout.strip()

    # ─── context ───

    def set_subscription(self, subscription_id: str) -> str:
        """Select the subscription and return its canonical id."""
        try:
            self.run('account', 'set', '--subscription', subscription_id)
            return self.run('account', 'show', '--query', 'id', '-o', 'tsv') or subscription_id
        except RemoteCallError as e:
            raise ContextError(
                f"Could not select subscription '{subscription_id}': {e.stderr or e}"
            ) from e

    # ─── resource groups ───

    def ensure_resource_group(self, name: str, location: str):
        self.run('group', 'create', '--name', name, '--location', location, '-o', 'none')

    def resource_group_exists(self, name: str) -> bool:
        return self.run('group', 'exists', '--name', name).lower() == 'true'

    def delete_resource_group(self, name: str):
        self.run('group', 'delete', '--name', name, '--yes', '--no-wait')

    # ─── template deployment ───

    def deploy_template(self, resource_group: str, deployment_name: str, template_file: Path, parameters: dict):
        cmd = [
            'deployment', 'group', 'create',
            '--resource-group', resource_group,
            '--name', deployment_name,
            '--template-file', str(template_file),
            '--parameters',
        ]
        cmd.extend(f"{k}={v}" for k, v in parameters.items())
        cmd.extend(['-o', 'none'])
        self.run(*cmd)

    # ─── marketplace ───

    def accept_terms(self, publisher: str, offer: str, plan: str) -> StepResult:
        """Accept marketplace terms; first accepted command shape wins.

        Different az installs ship different commands for this, so both
        shapes are tried. Failure of both is reported, never raised.
        """
        attempts = [
            ('term', 'accept', '--publisher', publisher, '--product', offer, '--plan', plan),
            ('vm', 'image', 'terms', 'accept', '--publisher', publisher, '--offer', offer, '--plan', plan),
        ]
        last_error = None
        for args in attempts:
            try:
                self.run(*args, '-o', 'none')
                return StepResult("accept_terms", ok=True, advisory=True, detail=' '.join(args[:3]))
            except RemoteCallError as e:
                last_error = e
        return StepResult("accept_terms", ok=False, advisory=True, error=last_error)

    def create_managed_app(self, resource_group: str, name: str, location: str, mrg_id: str,
                           publisher: str, offer: str, plan: str, plan_version: str,
                           app_parameters: dict | None = None):
        cmd = [
            'managedapp', 'create',
            '--resource-group', resource_group,
            '--name', name,
            '--location', location,
            '--kind', 'MarketPlace',
            '--managed-rg-id', mrg_id,
            '--plan-name', plan,
            '--plan-product', offer,
            '--plan-publisher', publisher,
            '--plan-version', plan_version,
        ]
        if not app_parameters:
            self.run(*cmd, '-o', 'none')
            return

        # Plain JSON object, not the deploymentParameters wrapper.
        fd, params_path = tempfile.mkstemp(prefix="vbma-appparams-", suffix=".json")
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(app_parameters, f)
            self.run(*cmd, '--parameters', f"@{params_path}", '-o', 'none')
        finally:
            Path(params_path).unlink(missing_ok=True)

    def delete_managed_app(self, resource_group: str, name: str):
        self.run(
            'resource', 'delete',
            '--resource-group', resource_group,
            '--name', name,
            '--resource-type', MANAGED_APP_RESOURCE_TYPE,
            '--no-wait',
        )
