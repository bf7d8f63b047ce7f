#!/usr/bin/env python3
"""
Veeam Azure Lab Destroyer
Removes what deploy.py created:
1. Deletes the VBMA managed application (if one is known)
2. Deletes its managed resource group (best-effort)
3. Deletes the lab resource group

Deletions are requested with --no-wait and each one is attempted even if an
earlier one failed. Only an unusable subscription stops the run.
"""

import argparse
import sys
from pathlib import Path
from typing import Mapping

import questionary
from questionary import Style
from rich.console import Console
from rich.panel import Panel

from azure_cli import AzureCli, run_preflight_checks
from errors import LabError, RemoteCallError, StepResult
from lab_config import ENV_FILE, MRG_SUFFIX, Parameter, default_lookup, env_lookup, load_environment, resolve
from lab_state import STATE_FILE, DeploymentState, StateManager

# ─────────────────────────────────────────────────────────────────────────────
# CONFIGURATION
# ─────────────────────────────────────────────────────────────────────────────

console = Console()

PROMPT_STYLE = Style(
    [
        ("qmark", "fg:cyan bold"),
        ("question", "bold"),
        ("answer", "fg:green"),
        ("pointer", "fg:cyan bold"),
        ("highlighted", "fg:cyan"),
        ("selected", "fg:green"),
    ]
)

BASE_TARGETS = [
    Parameter('subscriptionId', 'SUBSCRIPTION_ID'),
    Parameter('rgName', 'RG_NAME', default='veeam-lab-rg'),
]

MANAGED_APP_TARGETS = [
    Parameter('appName', 'VBMA_APP_NAME', required=False),
    Parameter('mrgName', 'VBMA_MRG_NAME', default='veeam-vbma-mrg', required=False),
]


def resolve_targets(flags: Mapping[str, str | None], env: Mapping[str, str],
                    state: DeploymentState | None) -> dict:
    """Work out what to delete.

    Flags always win. The subscription and resource group then come from the
    environment, the recorded state and the defaults, in that order. When the
    state records this resource group, its app and managed RG names are the
    ones deploy actually used, so they replace the environment and defaults
    entirely. Without such a record the managed RG gets the same `-mrg` rename
    deploy applies when it collides with the resource group.
    """
    flag_lookup = env_lookup({k: v for k, v in flags.items() if v})
    state_lookup = env_lookup(state.as_lookup() if state else {})
    targets = resolve(BASE_TARGETS, [
        ('flag', flag_lookup),
        ('env', env_lookup(env)),
        ('state', state_lookup),
        ('default', default_lookup),
    ]).values

    rg_name = targets['rgName']
    if state and state.APP_RG_NAME == rg_name:
        chain = [('flag', flag_lookup), ('state', state_lookup)]
    else:
        chain = [('flag', flag_lookup), ('env', env_lookup(env)), ('default', default_lookup)]
    managed = resolve(MANAGED_APP_TARGETS, chain)
    targets.update(managed.values)

    if managed.sources.get('mrgName') in ('env', 'default') and targets['mrgName'] == rg_name:
        targets['mrgName'] = f"{rg_name}{MRG_SUFFIX}"
    return targets


# ─────────────────────────────────────────────────────────────────────────────
# TEARDOWN
# ─────────────────────────────────────────────────────────────────────────────


class Teardown:
    """Issues best-effort, non-blocking deletions."""

    def __init__(self, az: AzureCli, targets: Mapping[str, str]):
        self.az = az
        self.targets = dict(targets)
        self.results: list[StepResult] = []

    def _best_effort(self, step: str, label: str, fn, *args) -> StepResult:
        console.print(f"[bold]Deleting {label}[/bold]")
        try:
            fn(*args)
        except RemoteCallError as e:
            console.print(f"[yellow]⚠ Could not delete {label}: {e}[/yellow]")
            result = StepResult(step, ok=False, advisory=True, error=e)
        else:
            console.print(f"[green]✓[/green] Delete requested: {label}")
            result = StepResult(step, ok=True, advisory=True)
        self.results.append(result)
        return result

    def run(self, dry_run: bool = False) -> list[StepResult]:
        subscription_id = self.targets['subscriptionId']
        rg_name = self.targets['rgName']
        app_name = self.targets.get('appName')
        mrg_name = self.targets.get('mrgName')

        console.print(Panel(f"[bold]Destroying lab in {subscription_id}[/bold]", border_style="red"))

        if dry_run:
            if app_name:
                console.print(f"[yellow]Dry Run: Would delete managed app {app_name} in {rg_name}[/yellow]")
            if mrg_name and mrg_name != rg_name:
                console.print(f"[yellow]Dry Run: Would delete managed resource group {mrg_name}[/yellow]")
            console.print(f"[yellow]Dry Run: Would delete resource group {rg_name}[/yellow]")
            return self.results

        # ContextError propagates; nothing has been deleted yet.
        self.az.set_subscription(subscription_id)
        self.results.append(StepResult('bind_context', ok=True))

        if app_name:
            self._best_effort('delete_managed_app', f"managed app {app_name}",
                              self.az.delete_managed_app, rg_name, app_name)
        if mrg_name and mrg_name != rg_name:
            self._best_effort('delete_managed_rg', f"managed resource group {mrg_name}",
                              self.az.delete_resource_group, mrg_name)
        self._best_effort('delete_resource_group', f"resource group {rg_name}",
                          self.az.delete_resource_group, rg_name)
        return self.results


# ─────────────────────────────────────────────────────────────────────────────
# MAIN
# ─────────────────────────────────────────────────────────────────────────────


def confirm_destroy(targets: Mapping[str, str]) -> bool:
    console.print("\n[bold red]WARNING: This will PERMANENTLY DELETE:[/bold red]")
    if targets.get('appName'):
        console.print(f"  • Managed application '{targets['appName']}'")
    if targets.get('mrgName') and targets['mrgName'] != targets['rgName']:
        console.print(f"  • Managed resource group '{targets['mrgName']}'")
    console.print(f"  • Resource group '{targets['rgName']}' and everything in it")
    console.print()

    confirm_name = questionary.text(
        f"To confirm, type the resource group name ({targets['rgName']}):",
        style=PROMPT_STYLE,
    ).ask()
    return confirm_name == targets['rgName']


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Destroy the Veeam Azure lab")
    parser.add_argument("--subscription-id", help="Subscription to delete from")
    parser.add_argument("--resource-group", help="Lab resource group")
    parser.add_argument("--app-name", help="Managed application name")
    parser.add_argument("--managed-resource-group", help="Managed resource group name")
    parser.add_argument("--state-file", default=STATE_FILE, help="Deployment state written by deploy.py")
    parser.add_argument("--dry-run", action="store_true", help="Simulate actions")
    parser.add_argument("--force", action="store_true", help="Skip confirmation")
    args = parser.parse_args(argv)

    state = StateManager(Path(args.state_file)).load()
    if state:
        console.print(f"[dim]Using recorded deployment from {args.state_file}[/dim]")

    flags = {
        'SUBSCRIPTION_ID': args.subscription_id,
        'RG_NAME': args.resource_group,
        'VBMA_APP_NAME': args.app_name,
        'VBMA_MRG_NAME': args.managed_resource_group,
    }
    try:
        targets = resolve_targets(flags, load_environment(Path.cwd() / ENV_FILE), state)
    except LabError as e:
        console.print(f"[red]❌ {e}[/red]")
        return 1

    if not args.dry_run:
        if not run_preflight_checks():
            return 1
        if not args.force and not confirm_destroy(targets):
            console.print("[yellow]Aborted.[/yellow]")
            return 1

    teardown = Teardown(AzureCli(), targets)
    try:
        results = teardown.run(dry_run=args.dry_run)
    except LabError as e:
        console.print(f"[red]❌ {e}[/red]")
        return 1

    skipped = [r for r in results if r.swallowed]
    if skipped:
        console.print(f"\n[yellow]Delete initiated with {len(skipped)} warning(s).[/yellow]")
    else:
        console.print("\n[bold green]Delete initiated.[/bold green]")
    return 0


if __name__ == "__main__":
    sys.exit(main())
