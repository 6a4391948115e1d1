import pytest

from node_bootstrap import firewall
from node_bootstrap.errors import FirewallError
from node_bootstrap.models import FirewallRule

RULES = [FirewallRule.model_validate(r) for r in ("22/tcp", "5011/tcp", "1194/udp")]


def test_opens_missing_rules_and_enables(host):
    host.ufw_added = {"22/tcp"}

    opened = firewall.ensure_rules(host, RULES)

    assert [str(r) for r in opened] == ["5011/tcp", "1194/udp"]
    assert host.ufw_added == {"22/tcp", "5011/tcp", "1194/udp"}
    assert host.ran("ufw --force enable")


def test_second_pass_changes_nothing(host):
    firewall.ensure_rules(host, RULES)
    host.commands.clear()

    assert firewall.ensure_rules(host, RULES) == []
    assert not host.ran("ufw allow")
    assert not host.ran("ufw --force enable")


def test_installs_ufw_when_missing(host):
    host.tools.discard("ufw")
    installed = []

    def install(packages):
        installed.extend(packages)
        host.tools.add("ufw")

    firewall.ensure_rules(host, RULES, install=install)

    assert installed == ["ufw"]


def test_missing_ufw_without_installer_fails(host):
    host.tools.discard("ufw")
    with pytest.raises(FirewallError):
        firewall.ensure_rules(host, RULES)


def test_command_failure_becomes_firewall_error(host):
    host.failures.add("ufw allow 5011/tcp")
    with pytest.raises(FirewallError):
        firewall.ensure_rules(host, RULES)


def test_open_port_reloads_only_on_change(host):
    relay = FirewallRule.model_validate("1194/udp")

    firewall.open_port(host, relay)
    assert host.ran("ufw reload")

    host.commands.clear()
    firewall.open_port(host, relay)
    assert not host.ran("ufw reload")


def test_open_port_with_firewalld(host):
    host.tools = {"firewall-cmd"}
    host.failures.add("firewall-cmd --permanent --query-port=1194/udp")

    firewall.open_port(host, FirewallRule(port=1194, protocol="udp"))

    assert host.ran("firewall-cmd --permanent --add-port=1194/udp")
    assert host.ran("firewall-cmd --reload")


def test_open_port_with_firewalld_rule_present(host):
    host.tools = {"firewall-cmd"}

    firewall.open_port(host, FirewallRule(port=1194, protocol="udp"))

    assert not host.ran("firewall-cmd --permanent --add-port")
