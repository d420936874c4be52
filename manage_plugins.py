#!/usr/bin/env python3
"""Plugin management CLI tool.

Works offline on the plugin registry document and the settings file. A
running service picks up enable/disable changes on restart.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Ensure project root is in path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

load_dotenv()

from plugin_runtime.constants import PLUGIN_REGISTRY_FILE, SETTINGS_FILE
from plugin_runtime.plugins.config import PluginConfigService
from plugin_runtime.plugins.discovery import DirectorySource
from plugin_runtime.plugins.errors import CircularDependency
from plugin_runtime.plugins.hooks import EventBus
from plugin_runtime.plugins.loader import PluginLoader
from plugin_runtime.plugins.registry import PluginRegistry
from plugin_runtime.plugins.storage import JsonFileStorage

console = Console()


def get_source() -> DirectorySource:
    return DirectorySource(PLUGIN_REGISTRY_FILE)


async def get_config() -> PluginConfigService:
    """Create and load a PluginConfigService over the settings file."""
    config = PluginConfigService(JsonFileStorage(SETTINGS_FILE), EventBus())
    await config.init()
    return config


async def discover() -> PluginLoader:
    loader = PluginLoader(PluginRegistry(), get_source())
    await loader.discover_plugins()
    return loader


async def cmd_list(args):
    """List all discovered plugins."""
    loader = await discover()
    config = await get_config()
    registry = loader.registry

    if not registry.count():
        console.print("[yellow]No plugins found.[/yellow]")
        return

    table = Table(title="Plugins")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Version")
    table.add_column("Category")
    table.add_column("Enabled")
    table.add_column("Depends on")
    for plugin_id in registry.get_all_plugins():
        manifest = registry.get_manifest(plugin_id)
        enabled = "[green]Yes[/green]" if config.is_enabled(plugin_id) else "No"
        table.add_row(
            plugin_id,
            manifest.name,
            manifest.version,
            manifest.category or "-",
            enabled,
            ", ".join(manifest.dependencies) or "-",
        )
    console.print(table)


async def cmd_info(args):
    """Show detailed plugin information."""
    loader = await discover()
    config = await get_config()
    manifest = loader.registry.get_manifest(args.plugin_id)
    if manifest is None:
        console.print(f"[red]Plugin '{args.plugin_id}' not found.[/red]")
        sys.exit(1)

    module = loader.get_module(args.plugin_id)
    lines = [
        f"Name:         {manifest.name}",
        f"Version:      {manifest.version}",
        f"Description:  {manifest.description}",
        f"Author:       {manifest.author or '-'}",
        f"Dependencies: {', '.join(manifest.dependencies) or '-'}",
        f"Optional:     {', '.join(manifest.optional_dependencies) or '-'}",
        f"Conflicts:    {', '.join(manifest.conflicts) or '-'}",
        f"Hooks:        {', '.join(manifest.hooks) or '-'}",
        f"Lifecycle:    {', '.join(sorted(module.capabilities)) or '-'}",
        f"Enabled:      {config.is_enabled(args.plugin_id)}",
    ]
    settings = config.get_all(args.plugin_id)
    if settings:
        lines.append(f"Settings:     {json.dumps(settings, indent=2, ensure_ascii=False)}")
    console.print(Panel("\n".join(lines), title=args.plugin_id, border_style="blue"))


async def _set_enabled(plugin_id: str, enabled: bool) -> None:
    loader = await discover()
    if not loader.registry.has(plugin_id):
        console.print(f"[red]Plugin '{plugin_id}' not found.[/red]")
        sys.exit(1)

    config = await get_config()
    if enabled:
        await config.enable(plugin_id)
    else:
        await config.disable(plugin_id)
    await config.flush()
    config.close()

    state = "enabled" if enabled else "disabled"
    console.print(f"[green]✓ Plugin '{plugin_id}' {state}.[/green] Restart the service to take effect.")


async def cmd_enable(args):
    """Enable a plugin."""
    await _set_enabled(args.plugin_id, True)


async def cmd_disable(args):
    """Disable a plugin."""
    await _set_enabled(args.plugin_id, False)


async def cmd_doctor(args):
    """Run health checks on the plugin system."""
    issues = []

    if not PLUGIN_REGISTRY_FILE.exists():
        issues.append(f"Plugin registry missing: {PLUGIN_REGISTRY_FILE}")
    else:
        try:
            with open(PLUGIN_REGISTRY_FILE) as f:
                json.load(f)
        except json.JSONDecodeError as e:
            issues.append(f"Plugin registry has invalid JSON: {e}")

    if SETTINGS_FILE.exists():
        try:
            with open(SETTINGS_FILE) as f:
                json.load(f)
        except json.JSONDecodeError as e:
            issues.append(f"Settings file has invalid JSON: {e}")

    source = get_source()
    entries = await source.list_plugins()
    for entry in entries:
        entry_module = entry.entry_point.split(":")[0]
        entry_file = source.plugin_dir(entry) / f"{entry_module}.py"
        if not entry_file.exists():
            issues.append(f"Plugin '{entry.id}': entry point file missing: {entry_file}")

    loader = await discover()
    registry = loader.registry
    for entry in entries:
        if entry.enabled and not registry.has(entry.id):
            issues.append(f"Plugin '{entry.id}' failed to import or validate (see log)")

    for plugin_id in registry.get_all_plugins():
        missing = [d for d in registry.get_manifest(plugin_id).dependencies if not registry.has(d)]
        if missing:
            issues.append(f"Plugin '{plugin_id}' requires unknown plugin(s): {', '.join(missing)}")

    try:
        loader.resolve_load_order(registry.get_all_plugins())
    except CircularDependency as e:
        issues.append(str(e))

    config = await get_config()
    for plugin_id in config.get_enabled_plugins():
        if not registry.has(plugin_id):
            issues.append(f"Enabled plugin '{plugin_id}' is not in the registry")

    if issues:
        console.print(f"[red]Found {len(issues)} issue(s):[/red]")
        for i, issue in enumerate(issues, 1):
            console.print(f"  {i}. {issue}")
        sys.exit(1)
    else:
        console.print(
            f"[green]All checks passed.[/green] {registry.count()} plugin(s) found, "
            f"{len(config.get_enabled_plugins())} enabled."
        )


def main():
    parser = argparse.ArgumentParser(description="Plugin Runtime Manager")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # list
    subparsers.add_parser("list", help="List all plugins")

    # info
    info_parser = subparsers.add_parser("info", help="Show plugin details")
    info_parser.add_argument("plugin_id", help="Plugin ID")

    # enable
    enable_parser = subparsers.add_parser("enable", help="Enable a plugin")
    enable_parser.add_argument("plugin_id", help="Plugin ID")

    # disable
    disable_parser = subparsers.add_parser("disable", help="Disable a plugin")
    disable_parser.add_argument("plugin_id", help="Plugin ID")

    # doctor
    subparsers.add_parser("doctor", help="Run health checks")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    commands = {
        "list": cmd_list,
        "info": cmd_info,
        "enable": cmd_enable,
        "disable": cmd_disable,
        "doctor": cmd_doctor,
    }

    asyncio.run(commands[args.command](args))


if __name__ == "__main__":
    main()
