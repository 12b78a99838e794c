"""solaudit - multi-agent smart contract audit.

Full entry point: analyze with any mode or agent set, and manage the local
knowledge store.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click

from ..models.review import AnalysisMode, Strategy
from ..utils.log import configure_logging

MODES = [m.value for m in AnalysisMode]
STRATEGIES = [s.value for s in Strategy]
PROVIDERS = ["openrouter", "openai", "anthropic"]


@click.group()
@click.version_option(package_name="solaudit")
def solaudit_cli() -> None:
    """solaudit - AI-assisted Solidity security, gas and tokenomics audit."""


@solaudit_cli.command()
@click.argument("contract", type=click.Path(exists=True, dir_okay=False))
@click.option("--mode", "-m", type=click.Choice(MODES), help="Analysis mode")
@click.option("--agents", type=str, help="Comma-separated agents to run")
@click.option("--strategy", type=click.Choice(STRATEGIES), help="Force an execution strategy")
@click.option("--output-format", "-f", type=click.Choice(["markdown", "json"]), default="markdown")
@click.option("--output-dir", "-o", type=click.Path(file_okay=False), help="Report directory")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), help="Config file")
@click.option("--ai-provider", type=click.Choice(PROVIDERS))
@click.option("--ci", is_flag=True, help="CI mode: critical risk exits with 1")
@click.option("--dry-run", is_flag=True, help="Use mock model responses (no API calls)")
@click.option("--no-knowledge", is_flag=True, help="Skip knowledge retrieval")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
def analyze(
    contract: str,
    mode: str | None,
    agents: str | None,
    strategy: str | None,
    output_format: str,
    output_dir: str | None,
    config_path: str | None,
    ai_provider: str | None,
    ci: bool,
    dry_run: bool,
    no_knowledge: bool,
    verbose: bool,
) -> None:
    """Audit a Solidity CONTRACT file."""
    from ..core.orchestrator import run_audit

    configure_logging(verbose)

    agent_list = [a.strip() for a in agents.split(",") if a.strip()] if agents else None

    exit_code = asyncio.run(
        run_audit(
            contract_path=Path(contract),
            mode=mode,
            agents=agent_list,
            strategy=strategy,
            output_format=output_format,
            output_dir=Path(output_dir) if output_dir else None,
            ci=ci,
            dry_run=dry_run,
            config_path=Path(config_path) if config_path else None,
            ai_provider=ai_provider,
            no_knowledge=no_knowledge,
        )
    )
    if exit_code:
        sys.exit(exit_code)


@solaudit_cli.group()
def knowledge() -> None:
    """Manage the local knowledge store."""


def _retriever(store: str, config_path: str | None):
    from ..core.config import get_effective_config
    from ..core.knowledge import KnowledgeRetriever

    config = get_effective_config(
        Path(config_path) if config_path else None,
        cli_overrides={"knowledge": {"store_path": store}},
    )
    return KnowledgeRetriever.from_config(config)


@knowledge.command("init")
@click.option("--store", type=click.Path(dir_okay=False), required=True, help="Vector store JSON file")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--verbose", "-v", is_flag=True)
def knowledge_init(store: str, config_path: str | None, verbose: bool) -> None:
    """Seed the store with the core knowledge documents."""
    from ..core.errors import KnowledgeRetrievalDegraded

    configure_logging(verbose)
    retriever = _retriever(store, config_path)
    try:
        indexed = asyncio.run(retriever.initialize_knowledge_base())
    except KnowledgeRetrievalDegraded as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(13)
    if indexed:
        click.echo(f"Indexed {indexed} core documents into {store}")
    else:
        click.echo(f"Knowledge store {store} already initialized")


@knowledge.command("search")
@click.argument("query")
@click.option("--store", type=click.Path(exists=True, dir_okay=False), required=True)
@click.option("--doc-type", "doc_types", multiple=True, help="Restrict to a document type")
@click.option("--limit", type=int, default=5)
@click.option("--threshold", type=float, default=None, help="Minimum similarity")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False))
def knowledge_search(
    query: str,
    store: str,
    doc_types: tuple[str, ...],
    limit: int,
    threshold: float | None,
    config_path: str | None,
) -> None:
    """Semantic search of the store for QUERY."""
    from ..core.errors import KnowledgeRetrievalDegraded

    configure_logging()
    retriever = _retriever(store, config_path)
    try:
        results = asyncio.run(
            retriever.semantic_search(query, list(doc_types) or None, limit=limit, similarity_threshold=threshold)
        )
    except KnowledgeRetrievalDegraded as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(13)

    if not results:
        click.echo("No matching documents")
        return
    for doc in results:
        click.echo(f"{doc.similarity:.3f}  [{doc.doc_type}] {doc.title}")


def main() -> None:
    solaudit_cli()


if __name__ == "__main__":
    main()
