import argparse
import sys
from pathlib import Path

import yaml
from pydantic import ValidationError

from . import console
from .host import HostEnvironment
from .models import load_manifest
from .orchestrator import BootstrapOrchestrator, outcome_table
from .settings import get_settings

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_BAD_MANIFEST = 2


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Provision this host as a BrinxAI worker node")
    parser.add_argument("--manifest", type=Path, help="Manifest YAML (default: BOOTSTRAP_MANIFEST_FILE or the bundled one)")
    args = parser.parse_args(argv)

    settings = get_settings()
    manifest_path = args.manifest or settings.MANIFEST_FILE

    try:
        manifest = load_manifest(manifest_path)
    except (OSError, yaml.YAMLError, ValidationError) as e:
        console.error(f"Invalid manifest {manifest_path or '(bundled)'}: {e}")
        return EXIT_BAD_MANIFEST

    console.banner(
        "System Start",
        "[bold green]Node Bootstrap[/bold green]\n"
        f"Network: [blue]{manifest.network}[/blue]\n"
        f"Worker: [blue]{manifest.worker_image}[/blue]\n"
        f"Relay: [blue]{manifest.relay.name}[/blue]",
    )

    result = BootstrapOrchestrator(HostEnvironment(settings), manifest).run()

    if result.state.outcomes:
        console.console.print(outcome_table(result.state))

    if not result.succeeded:
        console.error(f"Bootstrap failed at stage {result.failed_stage.value}: {result.error}")
        return EXIT_FAILED

    console.success("Bootstrap complete.")
    console.info(f"Input node IP for login: {settings.LOGIN_URL}")
    console.info(f"Check logs: {settings.WORKER_LOG_HINT}")
    return EXIT_OK


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
