from . import console
from .errors import CommandFailed, FirewallError
from .host import HostEnvironment
from .models import FirewallRule


def _added_rules(host: HostEnvironment) -> set[str]:
    """Rules already known to ufw, whether or not the firewall is enabled."""
    output = host.run(["ufw", "show", "added"], sudo=True).stdout
    added = set()
    for line in output.splitlines():
        parts = line.split()
        if parts[:2] == ["ufw", "allow"] and len(parts) == 3:
            added.add(parts[2])
    return added


def _allow_missing(host: HostEnvironment, rules: list[FirewallRule]) -> list[FirewallRule]:
    added = _added_rules(host)
    opened = []
    for rule in rules:
        if str(rule) in added:
            continue
        host.run(["ufw", "allow", str(rule)], sudo=True)
        opened.append(rule)
    return opened


def ensure_rules(host: HostEnvironment, rules: list[FirewallRule], install=None) -> list[FirewallRule]:
    """
    Allows each rule not yet present in ufw, then enables the firewall.

    `install` is called with the package list when ufw is missing.
    Returns the rules that had to be added.
    """
    try:
        if not host.has_tool("ufw"):
            if install is None:
                raise FirewallError("ufw is not installed")
            console.info("Installing ufw...")
            install(["ufw"])

        opened = _allow_missing(host, rules)
        status = host.run(["ufw", "status"], sudo=True).stdout
        if "Status: active" not in status:
            host.run(["ufw", "--force", "enable"], sudo=True)
            status = host.run(["ufw", "status"], sudo=True).stdout
    except CommandFailed as e:
        raise FirewallError(f"Firewall setup failed: {e}") from e

    if opened:
        console.info(f"Opened ports: {', '.join(map(str, opened))}")
    else:
        console.info("All required ports already open.")
    console.console.print(status.strip())
    return opened


def open_port(host: HostEnvironment, rule: FirewallRule) -> None:
    """Opens one port in whichever of ufw / firewalld is present, reloading only on change."""
    try:
        if host.has_tool("ufw") and _allow_missing(host, [rule]):
            host.run(["ufw", "reload"], sudo=True)

        if host.has_tool("firewall-cmd"):
            try:
                host.run(["firewall-cmd", "--permanent", f"--query-port={rule}"], sudo=True)
            except CommandFailed:
                host.run(["firewall-cmd", "--permanent", f"--add-port={rule}"], sudo=True)
                host.run(["firewall-cmd", "--reload"], sudo=True)
    except CommandFailed as e:
        raise FirewallError(f"Could not open {rule}: {e}") from e
