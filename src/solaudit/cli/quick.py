"""solaudit-quick - single-agent security pass.

Runs the security agent only, in quick mode.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click

from ..utils.log import configure_logging


@click.command(name="solaudit-quick")
@click.argument("contract", type=click.Path(exists=True, dir_okay=False))
@click.option("--output-format", "-f", type=click.Choice(["markdown", "json"]), default="markdown")
@click.option("--output-dir", "-o", type=click.Path(file_okay=False), help="Report directory")
@click.option("--ai-provider", type=click.Choice(["openrouter", "openai", "anthropic"]))
@click.option("--ci", is_flag=True, help="CI mode: critical risk exits with 1")
@click.option("--dry-run", is_flag=True, help="Use mock model responses (no API calls)")
@click.option("--verbose", "-v", is_flag=True)
def quick_cli(
    contract: str,
    output_format: str,
    output_dir: str | None,
    ai_provider: str | None,
    ci: bool,
    dry_run: bool,
    verbose: bool,
) -> None:
    """Quick security audit of a Solidity CONTRACT."""
    from ..core.orchestrator import run_audit

    configure_logging(verbose)

    exit_code = asyncio.run(
        run_audit(
            contract_path=Path(contract),
            mode="quick",
            output_format=output_format,
            output_dir=Path(output_dir) if output_dir else None,
            ci=ci,
            dry_run=dry_run,
            ai_provider=ai_provider,
        )
    )
    if exit_code:
        sys.exit(exit_code)


def main() -> None:
    quick_cli()


if __name__ == "__main__":
    main()
