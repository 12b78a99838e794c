"""Multi-agent audit orchestrator.

Validates a contract, picks agents and an execution strategy, runs the agents
under per-agent timeouts and folds their results into one AggregatedReport.
"""

from __future__ import annotations

import asyncio
import logging
import os
import random
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

from rich.console import Console

from .. import __version__
from ..models.agent import AgentKind, AgentOptions, AgentResult, AgentRun
from ..models.finding import FindingKind
from ..models.knowledge import KnowledgeBundle
from ..models.review import (
    AggregatedReport,
    AnalysisMode,
    AnalysisRequest,
    AuditRecord,
    AuditStage,
    ExecutionPlan,
    FailedAgent,
    FailureRecord,
    RiskLevel,
    Strategy,
)
from ..providers.base import AIProvider, get_ai_provider
from ..utils.concurrency import gather_settled
from ..utils.sanitize import sanitize_error
from .agents import AGENT_DEFS, SpecializedAgent, build_agents
from .config import agent_settings, get_effective_config
from .errors import AgentTimeout, AuditError, ValidationError
from .findings import deduplicate_findings, export_report_json, sort_findings
from .knowledge import KnowledgeRetriever, knowledge_focus
from .persistence import JsonArchiveStore, ReportStore
from .scanner import estimate_complexity
from .synthesis import (
    calculate_gas_score,
    calculate_overall_risk,
    calculate_overall_score,
    calculate_security_score,
    calculate_tokenomics_score,
    generate_agent_metadata,
    generate_executive_summary,
    generate_recommendations,
    generate_report_markdown,
    get_exit_code,
    perform_cross_validation,
    split_by_kind,
)

logger = logging.getLogger(__name__)

console = Console()

SOURCE_MARKERS = ("contract ", "library ", "interface ")

MODE_AGENTS: dict[AnalysisMode, tuple[AgentKind, ...]] = {
    AnalysisMode.QUICK: (AgentKind.SECURITY,),
    AnalysisMode.SECURITY_ONLY: (AgentKind.SECURITY,),
    AnalysisMode.COMPREHENSIVE: (AgentKind.SECURITY, AgentKind.GAS_OPTIMIZER, AgentKind.TOKENOMICS),
    AnalysisMode.DEFI_FOCUSED: (AgentKind.SECURITY, AgentKind.TOKENOMICS),
    AnalysisMode.GAS_OPTIMIZATION: (AgentKind.GAS_OPTIMIZER,),
}
DEFAULT_AGENTS: tuple[AgentKind, ...] = (AgentKind.SECURITY, AgentKind.GAS_OPTIMIZER)

PARALLEL_MAX_SIZE = 10_000
PARALLEL_MAX_COMPLEXITY = 0.5
PARALLEL_MIN_AGENTS = 3
SEQUENTIAL_MIN_COMPLEXITY = 0.8

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def generate_audit_id() -> str:
    """audit_<epoch ms>_<9 random base36 chars>"""
    suffix = "".join(random.choice(_BASE36) for _ in range(9))
    return f"audit_{int(time.time() * 1000)}_{suffix}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Orchestrator:
    """Coordinates the agents for one or more concurrent audits."""

    def __init__(
        self,
        config: dict,
        provider: AIProvider,
        retriever: Optional[KnowledgeRetriever] = None,
        store: Optional[ReportStore] = None,
        agents: Optional[dict[AgentKind, SpecializedAgent]] = None,
    ):
        self.config = config
        self.settings = agent_settings(config)
        self.agents = agents or build_agents(config, provider, self.settings)
        self.retriever = retriever
        self.store = store
        validation = config.get("validation") or {}
        self.min_length = validation.get("min_length", 50)
        self.max_length = validation.get("max_length", 1_000_000)
        self.active_requests: dict[str, AuditStage] = {}

    # -----------------------------------------------------------------------
    # Planning
    # -----------------------------------------------------------------------

    def validate_input(self, source: object) -> None:
        if not isinstance(source, str) or not source:
            raise ValidationError("Contract code must be a non-empty string")
        if len(source) < self.min_length:
            raise ValidationError("Contract code too short for meaningful analysis")
        if len(source) > self.max_length:
            raise ValidationError("Contract code exceeds maximum size limit (1MB)")
        if not any(marker in source for marker in SOURCE_MARKERS):
            raise ValidationError(
                "Invalid Solidity code: No contract, library, or interface declaration found"
            )

    def build_request(self, source: str, audit_id: str, options: dict) -> AnalysisRequest:
        mode = options.get("analysis_mode")
        strategy = options.get("strategy")
        try:
            mode = AnalysisMode(mode) if mode else None
        except ValueError:
            raise ValidationError(f"Unknown analysis mode: {mode}") from None
        try:
            strategy = Strategy(strategy) if strategy else None
        except ValueError:
            raise ValidationError(f"Unknown execution strategy: {strategy}") from None
        agents = options.get("agents")
        return AnalysisRequest(
            source=source,
            audit_id=audit_id,
            user_id=options.get("user_id"),
            mode=mode,
            agents=tuple(agents) if agents is not None else None,
            strategy=strategy,
        )

    def select_agents(
        self, mode: Optional[AnalysisMode], requested: Optional[Sequence[str]] = None
    ) -> list[AgentKind]:
        """Explicit agent names win over the mode mapping; unknown names are dropped."""
        if requested is not None:
            selected: list[AgentKind] = []
            for name in requested:
                kind = AgentKind.from_name(name)
                if kind is None:
                    logger.warning("Ignoring unknown agent: %s", name)
                elif kind not in selected:
                    selected.append(kind)
            return selected
        return list(MODE_AGENTS.get(mode, DEFAULT_AGENTS)) if mode else list(DEFAULT_AGENTS)

    def determine_strategy(
        self, source: str, mode: Optional[AnalysisMode], agent_count: int
    ) -> Strategy:
        complexity = estimate_complexity(source)
        if (
            len(source) < PARALLEL_MAX_SIZE
            and complexity < PARALLEL_MAX_COMPLEXITY
            and agent_count >= PARALLEL_MIN_AGENTS
        ):
            return Strategy.PARALLEL
        if complexity > SEQUENTIAL_MIN_COMPLEXITY or mode == AnalysisMode.COMPREHENSIVE:
            return Strategy.SEQUENTIAL
        return Strategy.ADAPTIVE

    def sort_agents_by_dependencies(self, selected: Sequence[AgentKind]) -> list[AgentKind]:
        """Priority order, with each agent's selected dependencies placed before it."""
        ordered: list[AgentKind] = []
        visiting: set[AgentKind] = set()

        def visit(kind: AgentKind) -> None:
            if kind in ordered or kind in visiting:
                return
            visiting.add(kind)
            for dep in self.settings[kind].dependencies:
                if dep in selected:
                    visit(dep)
            visiting.discard(kind)
            ordered.append(kind)

        for kind in sorted(selected, key=lambda k: self.settings[k].priority):
            visit(kind)
        return ordered

    # -----------------------------------------------------------------------
    # Execution
    # -----------------------------------------------------------------------

    async def _invoke(self, kind: AgentKind, source: str, options: AgentOptions) -> AgentResult:
        timeout = self.settings[kind].timeout
        try:
            return await asyncio.wait_for(self.agents[kind].analyze(source, options), timeout)
        except asyncio.TimeoutError:
            raise AgentTimeout(kind.value, timeout) from None

    @staticmethod
    def _failed_run(kind: AgentKind, error: BaseException) -> AgentRun:
        return AgentRun(
            agent=kind,
            status="failed",
            error=sanitize_error(str(error)),
            timed_out=isinstance(error, AgentTimeout),
        )

    async def execute_parallel(
        self, source: str, kinds: Sequence[AgentKind], options: AgentOptions
    ) -> list[AgentRun]:
        """Run every agent at once. A required failure is re-raised after all finish."""
        settled = await gather_settled(self._invoke(k, source, options) for k in kinds)
        runs: list[AgentRun] = []
        required_error: Optional[BaseException] = None
        for kind, outcome in zip(kinds, settled):
            if outcome.ok:
                runs.append(AgentRun(agent=kind, status="success", result=outcome.value))
                continue
            logger.error("%s agent failed: %s", kind.value, outcome.error)
            if self.settings[kind].required and required_error is None:
                required_error = outcome.error
            runs.append(self._failed_run(kind, outcome.error))
        if required_error is not None:
            raise required_error
        return runs

    async def execute_sequential(
        self,
        source: str,
        kinds: Sequence[AgentKind],
        options: AgentOptions,
        seed: Sequence[AgentRun] = (),
    ) -> list[AgentRun]:
        """Run agents one at a time in dependency order, passing results forward.

        Seed runs count as already completed dependencies.
        """
        known = set(kinds) | {r.agent for r in seed}
        completed = {r.agent for r in seed if r.succeeded}
        previous = [r.result for r in seed if r.succeeded]
        runs: list[AgentRun] = []

        for kind in self.sort_agents_by_dependencies(kinds):
            unmet = [
                d.value for d in self.settings[kind].dependencies
                if d in known and d not in completed
            ]
            if unmet:
                logger.warning("Skipping %s: dependencies not met (%s)", kind.value, ", ".join(unmet))
                runs.append(AgentRun(
                    agent=kind, status="skipped", error=f"Dependencies not met: {', '.join(unmet)}"
                ))
                continue

            agent_options = options.model_copy(update={"previous_results": list(previous)})
            try:
                result = await self._invoke(kind, source, agent_options)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("%s agent failed: %s", kind.value, e)
                if self.settings[kind].required:
                    raise
                runs.append(self._failed_run(kind, e))
                continue

            runs.append(AgentRun(agent=kind, status="success", result=result))
            completed.add(kind)
            previous.append(result)

        return runs

    async def execute_adaptive(
        self, source: str, kinds: Sequence[AgentKind], options: AgentOptions
    ) -> list[AgentRun]:
        """Required agents in parallel, then optional agents sequentially."""
        required = [k for k in kinds if self.settings[k].required]
        optional = [k for k in kinds if not self.settings[k].required]
        if not required:
            return await self.execute_sequential(source, optional, options)

        required_runs = await self.execute_parallel(source, required, options)
        if not optional or not any(r.succeeded for r in required_runs):
            return required_runs

        optional_runs = await self.execute_sequential(source, optional, options, seed=required_runs)
        return required_runs + optional_runs

    async def execute(self, plan: ExecutionPlan, source: str, options: AgentOptions) -> list[AgentRun]:
        kinds = [AgentKind(a) for a in plan.agents]
        if plan.strategy == Strategy.PARALLEL:
            return await self.execute_parallel(source, kinds, options)
        if plan.strategy == Strategy.SEQUENTIAL:
            return await self.execute_sequential(source, kinds, options)
        return await self.execute_adaptive(source, kinds, options)

    async def retrieve_knowledge(
        self, source: str, mode: Optional[AnalysisMode]
    ) -> Optional[KnowledgeBundle]:
        if self.retriever is None:
            return None
        bundle = await self.retriever.get_contextual_knowledge(source, knowledge_focus(mode))
        logger.info("Retrieved %d knowledge sources", bundle.total_sources)
        return bundle

    # -----------------------------------------------------------------------
    # Aggregation and reporting
    # -----------------------------------------------------------------------

    def aggregate_results(self, runs: Sequence[AgentRun]) -> dict[FindingKind, list]:
        """Merge the successful agents' findings, deduplicated and ordered, by kind."""
        collected = []
        for run in runs:
            if not run.succeeded:
                continue
            collected.extend(
                f if f.source == run.agent.value else f.model_copy(update={"source": run.agent.value})
                for f in run.result.findings
            )
        return split_by_kind(sort_findings(deduplicate_findings(collected)))

    def generate_report(
        self,
        request: AnalysisRequest,
        plan: ExecutionPlan,
        runs: Sequence[AgentRun],
        knowledge: Optional[KnowledgeBundle],
        execution_time: float,
    ) -> AggregatedReport:
        successful = [r.result for r in runs if r.succeeded]
        buckets = self.aggregate_results(runs)
        vulnerabilities = buckets[FindingKind.VULNERABILITY]
        optimizations = buckets[FindingKind.OPTIMIZATION]
        tokenomics = buckets[FindingKind.TOKENOMICS]
        risk = calculate_overall_risk(vulnerabilities, tokenomics)

        return AggregatedReport(
            audit_id=request.audit_id,
            user_id=request.user_id,
            analysis_mode=request.mode,
            strategy=plan.strategy,
            agents_used=list(plan.agents),
            summary=generate_executive_summary(vulnerabilities, risk),
            vulnerabilities=vulnerabilities,
            gas_optimizations=optimizations,
            tokenomics_findings=tokenomics,
            security_score=calculate_security_score(vulnerabilities),
            gas_score=calculate_gas_score(optimizations),
            tokenomics_score=calculate_tokenomics_score(tokenomics),
            overall_score=calculate_overall_score(successful),
            risk_category=risk,
            recommendations=generate_recommendations(vulnerabilities, optimizations, tokenomics),
            agent_metadata=generate_agent_metadata(successful),
            cross_validation=perform_cross_validation(vulnerabilities + optimizations + tokenomics),
            failed_agents=[
                FailedAgent(agent=r.agent.value, error=r.error or "", timed_out=r.timed_out)
                for r in runs if r.status == "failed"
            ],
            skipped_agents=[r.agent.value for r in runs if r.status == "skipped"],
            knowledge_sources=knowledge.total_sources if knowledge else 0,
            knowledge_fallback=knowledge.fallback if knowledge else False,
            execution_time=round(execution_time, 2),
            timestamp=datetime.now(timezone.utc),
        )

    # -----------------------------------------------------------------------
    # Persistence (best effort)
    # -----------------------------------------------------------------------

    async def persist_report(self, report: AggregatedReport) -> None:
        if self.store is None:
            return
        record = AuditRecord(
            audit_id=report.audit_id,
            user_id=report.user_id,
            analysis_mode=report.analysis_mode.value if report.analysis_mode else "comprehensive",
            agents_used=report.agents_used,
            vulnerabilities=[v.model_dump(mode="json", by_alias=True) for v in report.vulnerabilities],
            security_score=report.security_score,
            gas_optimization_score=report.gas_score,
            overall_score=report.overall_score,
            risk_category=report.risk_category.value,
            code_insights={
                "gasOptimizations": [o.model_dump(mode="json", by_alias=True) for o in report.gas_optimizations],
                "tokenomicsFindings": [t.model_dump(mode="json", by_alias=True) for t in report.tokenomics_findings],
                "recommendations": report.recommendations,
            },
            analysis_duration=report.execution_time,
            agent_results=[m.model_dump(mode="json", by_alias=True) for m in report.agent_metadata],
            completed_at=_now_iso(),
        )
        try:
            await self.store.save_record(record)
        except Exception as e:
            logger.error("Failed to store audit %s: %s", report.audit_id, e)

    async def persist_failure(self, audit_id: str, user_id: Optional[str], error: BaseException) -> None:
        if self.store is None:
            return
        record = FailureRecord(
            audit_id=audit_id,
            user_id=user_id,
            error_message=sanitize_error(str(error)),
            completed_at=_now_iso(),
        )
        try:
            await self.store.save_failure(record)
        except Exception as e:
            logger.error("Failed to store failure for %s: %s", audit_id, e)

    # -----------------------------------------------------------------------
    # Entry point
    # -----------------------------------------------------------------------

    def get_status(self, audit_id: str) -> Optional[AuditStage]:
        return self.active_requests.get(audit_id)

    async def analyze_contract(self, source: str, options: Optional[dict] = None) -> AggregatedReport:
        """Audit one contract end to end.

        options: audit_id, user_id, analysis_mode, agents, strategy.
        Returns the report, or raises ValidationError or the required
        agent's failure.
        """
        options = dict(options or {})
        audit_id = options.get("audit_id") or generate_audit_id()
        start_time = time.time()
        self.active_requests[audit_id] = AuditStage.VALIDATING
        logger.info("Starting multi-agent analysis: %s", audit_id)

        try:
            self.validate_input(source)
            request = self.build_request(source, audit_id, options)

            self.active_requests[audit_id] = AuditStage.SELECTING_AGENTS
            kinds = self.select_agents(request.mode, request.agents)
            if not kinds:
                raise ValidationError("No valid agents selected")
            strategy = request.strategy or self.determine_strategy(source, request.mode, len(kinds))
            plan = ExecutionPlan(
                agents=[k.value for k in kinds],
                strategy=strategy,
                order=[k.value for k in self.sort_agents_by_dependencies(kinds)],
                complexity=estimate_complexity(source),
            )
            logger.info("Using %s strategy for agents: %s", strategy.value, ", ".join(plan.agents))

            self.active_requests[audit_id] = AuditStage.ENRICHING
            knowledge = await self.retrieve_knowledge(source, request.mode)

            self.active_requests[audit_id] = AuditStage.EXECUTING
            runs = await self.execute(
                plan, source, AgentOptions(audit_id=audit_id, contextual_knowledge=knowledge)
            )

            self.active_requests[audit_id] = AuditStage.AGGREGATING
            report = self.generate_report(request, plan, runs, knowledge, time.time() - start_time)

            self.active_requests[audit_id] = AuditStage.REPORTING
            await self.persist_report(report)

            self.active_requests[audit_id] = AuditStage.PERSISTED
            logger.info("Analysis %s completed in %.2fs", audit_id, report.execution_time)
            return report
        except Exception as e:
            self.active_requests[audit_id] = AuditStage.FAILED
            logger.error("Multi-agent analysis %s failed: %s", audit_id, e)
            await self.persist_failure(audit_id, options.get("user_id"), e)
            raise
        finally:
            self.active_requests.pop(audit_id, None)


# ---------------------------------------------------------------------------
# CLI-facing runner
# ---------------------------------------------------------------------------

RISK_COLORS = {
    RiskLevel.LOW: "green",
    RiskLevel.MEDIUM: "yellow",
    RiskLevel.HIGH: "red",
    RiskLevel.CRITICAL: "bold red",
}


async def run_audit(
    contract_path: Path,
    mode: Optional[str] = None,
    agents: Optional[list[str]] = None,
    strategy: Optional[str] = None,
    output_format: str = "markdown",
    output_dir: Optional[Path] = None,
    ci: bool = False,
    dry_run: bool = False,
    config_path: Optional[Path] = None,
    ai_provider: Optional[str] = None,
    no_knowledge: bool = False,
) -> int:
    """Audit a contract file and write the report. Returns exit code."""
    start_time = time.time()

    contract_path = Path(contract_path).resolve()
    if not contract_path.is_file():
        console.print(f"  [red]ERROR[/red] Contract file does not exist: {contract_path}")
        return 12
    try:
        source = contract_path.read_text(encoding="utf-8-sig")
    except UnicodeDecodeError as e:
        console.print(f"  [red]ERROR[/red] Contract file is not UTF-8 text: {contract_path} ({e.reason})")
        return 12

    # Auto-detect CI
    is_ci = ci or bool(
        os.environ.get("GITHUB_ACTIONS")
        or os.environ.get("CI")
        or os.environ.get("JENKINS_URL")
    )

    cli_overrides: dict = {}
    if ai_provider:
        cli_overrides.setdefault("ai", {})["provider"] = ai_provider
    if no_knowledge:
        cli_overrides.setdefault("knowledge", {})["enabled"] = False
    config = get_effective_config(config_path, cli_overrides=cli_overrides or None)

    # Banner
    console.print()
    console.print(f"  [bold cyan]SOLAUDIT[/bold cyan] v{__version__}")
    console.print(f"  Contract: [white]{contract_path.name}[/white]")
    console.print(f"  Mode:     [white]{mode or 'default'}[/white]")
    if dry_run:
        console.print("  Run:      [yellow]DRY RUN[/yellow]")
    console.print()

    try:
        provider = get_ai_provider(config, provider_override=ai_provider, dry_run=dry_run)
        console.print(f"  [green]OK[/green] Provider: {provider.name}")
    except ValueError as e:
        console.print(f"  [red]ERROR[/red] Failed to initialize AI provider: {e}")
        return 13

    retriever = None
    if (config.get("knowledge") or {}).get("enabled", True):
        # Dry runs never reach the embeddings API; they get the core patterns
        retriever = KnowledgeRetriever(None, None) if dry_run else KnowledgeRetriever.from_config(config)

    archive_dir = (config.get("persistence") or {}).get("archive_dir")
    store = JsonArchiveStore(Path(archive_dir)) if archive_dir else None

    orchestrator = Orchestrator(config, provider, retriever=retriever, store=store)

    console.print("  [cyan]Analyzing contract...[/cyan]")
    try:
        report = await orchestrator.analyze_contract(
            source,
            {"analysis_mode": mode, "agents": agents, "strategy": strategy},
        )
    except ValidationError as e:
        console.print(f"  [red]ERROR[/red] {e}")
        return 11
    except AuditError as e:
        console.print(f"  [red]FAILED[/red] {sanitize_error(str(e))}")
        return 13

    for meta in report.agent_metadata:
        agent_def = AGENT_DEFS[AgentKind(meta.agent)]
        console.print(
            f"  [green]OK[/green] [{agent_def.color}]{agent_def.name}[/{agent_def.color}]: "
            f"score {meta.score}, {len(meta.models_used)} models, {meta.tokens_used} tokens "
            f"in {round(meta.execution_time, 1)}s"
        )
    for failed in report.failed_agents:
        label = "TIMEOUT" if failed.timed_out else "FAILED"
        console.print(f"  [red]{label}[/red] {failed.agent}: {failed.error}")
    for skipped in report.skipped_agents:
        console.print(f"  [yellow]SKIPPED[/yellow] {skipped}: dependencies not met")
    if report.knowledge_fallback:
        console.print("  [yellow]WARN[/yellow] Knowledge base unavailable, used core patterns")

    output_dir = Path(output_dir) if output_dir else Path.cwd() / ".solaudit" / "reports"
    json_path = export_report_json(report, output_dir / f"{report.audit_id}.json")
    if output_format == "markdown":
        md_path = output_dir / f"{report.audit_id}.md"
        md_path.write_text(generate_report_markdown(report, dry_run=dry_run), encoding="utf-8")
        console.print(f"  Report:  {md_path}")
    else:
        console.print(f"  Report:  {json_path}")

    exit_code = get_exit_code(report.risk_category, ci=is_ci)
    color = RISK_COLORS[report.risk_category]
    console.print(
        f"\n  [{color}]Risk: {report.risk_category.value.upper()}[/{color}] "
        f"(overall score {report.overall_score}, "
        f"{report.summary.total_vulnerabilities} vulnerabilities) "
        f"in {round(time.time() - start_time, 1)}s"
    )
    console.print()
    if is_ci:
        console.print(f"  CI Mode: Exiting with code {exit_code}")

    return exit_code
