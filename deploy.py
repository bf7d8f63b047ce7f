#!/usr/bin/env python3
"""
Veeam Azure Lab Deployer

Provisions the baseline lab (infra/main.bicep) into a resource group and,
optionally, the Veeam Backup for Microsoft Azure marketplace managed app.

Deployment Steps:
  1. CONTEXT: Select the target subscription
  2. RESOURCE GROUP: Create the lab resource group if absent
  3. TEMPLATE: Submit the baseline Bicep deployment
  4. OFFER: Resolve marketplace identifiers (marketplace only)
  5. TERMS: Accept marketplace terms, best-effort (marketplace only)
  6. MANAGED APP: Create the managed application (marketplace only)

A state file is written after the baseline and again after the managed app
so that destroy.py can find everything later.
"""

import argparse
import sys
from enum import Enum
from pathlib import Path
from typing import Mapping

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from azure_cli import AzureCli, managed_resource_group_id, run_preflight_checks
from errors import LabError, NamingConflictError, StepResult
from lab_config import (
    ENV_FILE,
    LAB_PARAMETERS_FILE,
    MARKETPLACE_PARAMETERS_FILE,
    TEMPLATE_FILE,
    MarketplaceOffer,
    deployment_name,
    load_environment,
    parse_bool,
    read_parameter_document,
    resolve_lab_config,
    resolve_marketplace_offer,
    template_parameters,
    timestamped_name,
)
from lab_state import STATE_FILE, DeploymentState, StateManager

console = Console()


class DeployStep(str, Enum):
    """Deployment steps, in execution order."""
    BIND_CONTEXT = "bind_context"
    RESOURCE_GROUP = "resource_group"
    TEMPLATE = "template"
    MARKETPLACE_OFFER = "marketplace_offer"
    ACCEPT_TERMS = "accept_terms"
    MANAGED_APP = "managed_app"
    SAVE_STATE = "save_state"


# ─────────────────────────────────────────────────────────────────────────────
# DEPLOYMENT ORCHESTRATOR
# ─────────────────────────────────────────────────────────────────────────────

class Orchestrator:
    """Runs the deployment steps in order, stopping at the first fatal failure."""

    def __init__(self, az: AzureCli, config: Mapping[str, str], state_mgr: StateManager,
                 template_file: Path, env: Mapping[str, str] | None = None,
                 marketplace_parameters_file: Path | None = None):
        self.az = az
        self.config = dict(config)
        self.state_mgr = state_mgr
        self.template_file = Path(template_file)
        self.env = env or {}
        self.marketplace_parameters_file = marketplace_parameters_file
        self.results: list[StepResult] = []
        self.subscription_id = self.config['subscriptionId']
        self.offer: MarketplaceOffer | None = None
        self.previous_state: DeploymentState | None = None

    @property
    def failed_step(self) -> str | None:
        for result in self.results:
            if not result.ok and not result.advisory:
                return result.step
        return None

    def _fatal(self, step: DeployStep, fn, *args, **kwargs):
        try:
            value = fn(*args, **kwargs)
        except LabError as e:
            self.results.append(StepResult(step.value, ok=False, error=e))
            raise
        self.results.append(StepResult(step.value, ok=True))
        return value

    def run(self, deploy_marketplace: bool = False, dry_run: bool = False) -> list[StepResult]:
        rg_name = self.config['rgName']
        location = self.config['location']
        self.previous_state = self.state_mgr.load()

        console.print(Panel("[bold]Step 1: Azure Context[/bold]", border_style="blue"))
        if dry_run:
            console.print(f"[yellow]🔸 Dry run - would select subscription {self.subscription_id}[/yellow]")
        else:
            self.subscription_id = self._fatal(DeployStep.BIND_CONTEXT, self.az.set_subscription, self.subscription_id)
            console.print(f"[green]✓[/green] Subscription: [cyan]{self.subscription_id}[/cyan]")

        console.print(Panel(f"[bold]Step 2: Resource Group {rg_name} ({location})[/bold]", border_style="blue"))
        if dry_run:
            console.print("[yellow]🔸 Dry run - would create resource group[/yellow]")
        else:
            self._fatal(DeployStep.RESOURCE_GROUP, self.az.ensure_resource_group, rg_name, location)
            console.print(f"[green]✓[/green] Resource group ready")

        console.print(Panel("[bold]Step 3: Baseline Lab (Bicep)[/bold]", border_style="blue"))
        name = deployment_name()
        if dry_run:
            console.print(f"[yellow]🔸 Dry run - would submit {self.template_file} as {name}[/yellow]")
        else:
            self._fatal(DeployStep.TEMPLATE, self.az.deploy_template,
                        rg_name, name, self.template_file, template_parameters(self.config))
            self._save_state(self._baseline_state(rg_name))
            console.print("[green]✓ Baseline deployed[/green]")

        if not deploy_marketplace:
            console.print("[dim]Skipping marketplace deployment (use --marketplace or DEPLOY_VBMA=true)[/dim]")
            return self.results

        self._run_marketplace(rg_name, location, dry_run)
        return self.results

    def _run_marketplace(self, rg_name: str, location: str, dry_run: bool):
        console.print(Panel("[bold]Step 4: Marketplace Offer[/bold]", border_style="blue"))
        self.offer = self._fatal(DeployStep.MARKETPLACE_OFFER, self._resolve_offer, rg_name, dry_run)
        offer = self.offer

        console.print(Panel("[bold]Step 5: Marketplace Terms[/bold]", border_style="blue"))
        if dry_run:
            console.print("[yellow]🔸 Dry run - would accept marketplace terms[/yellow]")
        else:
            result = self.az.accept_terms(offer.publisher, offer.offer, offer.plan)
            self.results.append(result)
            if result.ok:
                console.print(f"[green]✓[/green] Terms accepted ({result.detail})")
            else:
                console.print(f"[yellow]⚠ Could not accept terms, continuing: {result.error}[/yellow]")

        console.print(Panel(f"[bold]Step 6: Managed App {offer.app_name}[/bold]", border_style="blue"))
        mrg_id = managed_resource_group_id(self.subscription_id, offer.mrg_name)
        console.print(f"[dim]App RG: {rg_name}[/dim]")
        console.print(f"[dim]Managed RG id: {mrg_id}[/dim]")
        if dry_run:
            console.print("[yellow]🔸 Dry run - would create managed application[/yellow]")
            return

        self._fatal(
            DeployStep.MANAGED_APP, self.az.create_managed_app,
            rg_name, offer.app_name, location, mrg_id,
            offer.publisher, offer.offer, offer.plan, offer.plan_version, offer.app_parameters,
        )
        self._save_state(DeploymentState(
            APP_RG_NAME=rg_name,
            APP_NAME=offer.app_name,
            MRG_NAME=offer.mrg_name,
            SUBSCRIPTION_ID=self.subscription_id,
        ))
        console.print("[green]✓ Managed app deployment submitted[/green]")

    def _save_state(self, state: DeploymentState):
        self._fatal(DeployStep.SAVE_STATE, self.state_mgr.save, state)

    def _baseline_state(self, rg_name: str) -> DeploymentState:
        """Baseline record, keeping a managed app already recorded for this resource group."""
        state = DeploymentState(APP_RG_NAME=rg_name, SUBSCRIPTION_ID=self.subscription_id)
        previous = self.previous_state
        if previous and previous.APP_RG_NAME == rg_name and previous.SUBSCRIPTION_ID == self.subscription_id:
            state.APP_NAME = previous.APP_NAME
            state.MRG_NAME = previous.MRG_NAME
        return state

    def _recorded_mrg(self, rg_name: str, offer: MarketplaceOffer) -> str | None:
        """Managed RG a previous run created for this same app, if any.

        A recorded name derived from the requested one (timestamp suffix) counts
        as the same managed RG.
        """
        previous = self.previous_state
        if not previous or not previous.MRG_NAME:
            return None
        if previous.APP_RG_NAME != rg_name or previous.APP_NAME != offer.app_name:
            return None
        if previous.MRG_NAME == offer.mrg_name or previous.MRG_NAME.startswith(f"{offer.mrg_name}-"):
            return previous.MRG_NAME
        return None

    def _resolve_offer(self, rg_name: str, dry_run: bool) -> MarketplaceOffer:
        document = read_parameter_document(self.marketplace_parameters_file)
        offer = resolve_marketplace_offer(self.env, document, rg_name)
        console.print(f"[green]✓[/green] {offer.publisher} / {offer.offer} / {offer.plan} ({offer.plan_version})")

        recorded = self._recorded_mrg(rg_name, offer)
        if recorded:
            console.print(f"[dim]Reusing managed resource group {recorded} from the previous deployment[/dim]")
            return offer.with_mrg_name(recorded)

        if dry_run or not self.az.resource_group_exists(offer.mrg_name):
            return offer

        if offer.mrg_from_env:
            raise NamingConflictError(
                offer.mrg_name,
                f"Delete it (az group delete -n {offer.mrg_name}) or set VBMA_MRG_NAME to a new name.",
            )
        renamed = timestamped_name(offer.mrg_name)
        console.print(f"[yellow]⚠ Managed resource group {offer.mrg_name} already exists; using {renamed}[/yellow]")
        return offer.with_mrg_name(renamed)


# ─────────────────────────────────────────────────────────────────────────────
# DISPLAY
# ─────────────────────────────────────────────────────────────────────────────

def display_state_summary(state: DeploymentState | None):
    """Display the persisted deployment state."""
    if state is None:
        console.print("[dim]No deployment state found[/dim]")
        return

    table = Table(title="Deployment State", show_header=False, border_style="cyan")
    table.add_column("Field", style="dim")
    table.add_column("Value", style="green")
    table.add_row("Subscription", state.SUBSCRIPTION_ID or "not set")
    table.add_row("Resource Group", state.APP_RG_NAME or "not set")
    table.add_row("Managed App", state.APP_NAME or "none")
    table.add_row("Managed RG", state.MRG_NAME or "none")
    if state.DEPLOYED_AT:
        table.add_row("Deployed", state.DEPLOYED_AT)
    console.print(table)


def display_config_summary(config: Mapping[str, str], deploy_marketplace: bool):
    table = Table(title="Lab Configuration", show_header=False, border_style="cyan")
    table.add_column("Field", style="dim")
    table.add_column("Value", style="green")
    for key in ('subscriptionId', 'location', 'rgName', 'prefix', 'adminUsername', 'allowedRdpSource'):
        table.add_row(key, config.get(key, ""))
    table.add_row("marketplace", "yes" if deploy_marketplace else "no")
    console.print(table)


# ─────────────────────────────────────────────────────────────────────────────
# MAIN
# ─────────────────────────────────────────────────────────────────────────────

def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Deploy the Veeam Azure lab")
    parser.add_argument('--marketplace', action=argparse.BooleanOptionalAction, default=None,
                        help='Deploy the VBMA managed app (default: DEPLOY_VBMA, else off)')
    parser.add_argument('--template-file', default=TEMPLATE_FILE, help='Baseline Bicep template')
    parser.add_argument('--parameters-file', default=LAB_PARAMETERS_FILE, help='Lab parameters file')
    parser.add_argument('--marketplace-parameters-file', default=MARKETPLACE_PARAMETERS_FILE,
                        help='Marketplace parameters file')
    parser.add_argument('--state-file', default=STATE_FILE, help='Where to record the deployment')
    parser.add_argument('--dry-run', action='store_true', help='Show the plan without calling Azure')
    parser.add_argument('--status', action='store_true', help='Show the recorded deployment state')
    parser.add_argument('--reset', action='store_true', help='Forget the recorded deployment')
    args = parser.parse_args(argv)

    console.print(Panel.fit(
        "[bold cyan]Veeam Azure Lab[/bold cyan]\n[dim]Deployment[/dim]",
        border_style="cyan"
    ))
    console.print()

    state_mgr = StateManager(Path(args.state_file))
    if args.reset:
        state_mgr.clear()
        console.print("[green]✓ State cleared[/green]")
        return 0

    if args.status:
        display_state_summary(state_mgr.load())
        return 0

    env = load_environment(Path.cwd() / ENV_FILE)
    try:
        config = resolve_lab_config(env, read_parameter_document(args.parameters_file))
    except LabError as e:
        console.print(f"[red]❌ {e}[/red]")
        return 1

    if args.marketplace is None:
        deploy_marketplace = parse_bool(config.get('deployVbma', 'false'))
    else:
        deploy_marketplace = args.marketplace

    display_config_summary(config, deploy_marketplace)
    console.print()

    if not args.dry_run and not run_preflight_checks((args.template_file,)):
        return 1

    orchestrator = Orchestrator(
        AzureCli(), config, state_mgr, Path(args.template_file),
        env=env, marketplace_parameters_file=Path(args.marketplace_parameters_file),
    )
    try:
        orchestrator.run(deploy_marketplace, dry_run=args.dry_run)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/yellow]")
        return 1
    except LabError as e:
        console.print(f"[red]❌ Step '{orchestrator.failed_step}' failed: {e}[/red]")
        if orchestrator.failed_step in (DeployStep.MARKETPLACE_OFFER, DeployStep.MANAGED_APP):
            console.print("[dim]The baseline lab is still deployed; run destroy.py to remove it.[/dim]")
        return 1

    console.print(Panel("[bold green]✅ Deployment Complete![/bold green]", border_style="green"))
    return 0


if __name__ == '__main__':
    sys.exit(main())
