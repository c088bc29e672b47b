"""
Interception CA CLI
Shows where the CA lives, its details and how to trust it
"""

import sys
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from redirect_proxy.interception.certificate_manager import CertificateManager

console = Console()

PLATFORM_KEYS = {
    "win32": "windows",
    "darwin": "macos",
}


def show_ca_command(proxy_config, platform: str = sys.platform) -> int:
    """CLI command to show the interception CA"""
    manager = CertificateManager(proxy_config)

    console.print("\n[bold blue]🔐 Interception CA[/bold blue]\n")

    info = manager.get_ca_cert_info()
    if info is None:
        console.print(f"[yellow]No CA certificate at {manager.get_ca_cert_path()}[/yellow]")
        console.print("[dim]mitmproxy generates it the first time the proxy starts[/dim]")
        return 1

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Field", style="cyan", width=16)
    table.add_column("Value")

    for field in ("path", "subject", "issuer", "not_before", "not_after", "fingerprint"):
        table.add_row(field, str(info[field]))

    console.print(table)

    instructions = manager.get_installation_instructions()
    key = PLATFORM_KEYS.get(platform, "linux")
    console.print(Panel(instructions[key].strip(), title="Trust the CA", border_style="green"))

    return 0
