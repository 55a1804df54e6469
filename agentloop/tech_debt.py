"""Technical debt review of a finished session.

Looks at the iteration logs for recurring retries, repeated verification
failures, heavy decomposition, repeated errors and slow or failing
iterations, and reports them as prioritized items.
"""

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

from agentloop.iteration_logs import IterationLog
from agentloop.progress import ProgressLog
from agentloop.session import SessionStatistics

logger = logging.getLogger(__name__)

Severity = Literal["critical", "high", "medium", "low"]
Category = Literal[
    "retry_patterns",
    "verification_failures",
    "decomposition_frequency",
    "error_patterns",
    "performance",
    "process",
]

CATEGORIES: tuple[Category, ...] = (
    "retry_patterns",
    "verification_failures",
    "decomposition_frequency",
    "error_patterns",
    "performance",
    "process",
)
SEVERITY_ORDER: dict[Severity, int] = {"critical": 0, "high": 1, "medium": 2, "low": 3}

RETRY_THRESHOLD_HIGH = 3
RETRY_THRESHOLD_MEDIUM = 2
VERIFICATION_FAILURE_THRESHOLD_HIGH = 3
DECOMPOSITION_RATIO_HIGH = 0.5
DECOMPOSITION_RATIO_MEDIUM = 0.3
ERROR_REPETITION_THRESHOLD = 2
ERROR_MESSAGE_KEY_LENGTH = 100
SLOW_ITERATION_MULTIPLIER = 2
LOW_SUCCESS_RATE = 70
CRITICAL_SUCCESS_RATE = 50
TOP_ITEMS_IN_REPORT = 5


@dataclass
class TechnicalDebtItem:
    id: str
    category: Category
    severity: Severity
    title: str
    description: str
    occurrences: int
    affected_iterations: list[int]
    suggested_action: str | None = None


@dataclass
class TechnicalDebtReport:
    session_id: str
    analyzed_at: str
    items: list[TechnicalDebtItem]
    summary: str
    recommendations: list[str]

    @property
    def total_items(self) -> int:
        return len(self.items)

    @property
    def items_by_severity(self) -> dict[Severity, int]:
        counts: dict[Severity, int] = {severity: 0 for severity in SEVERITY_ORDER}
        for item in self.items:
            counts[item.severity] += 1
        return counts

    @property
    def items_by_category(self) -> dict[Category, int]:
        counts: dict[Category, int] = {category: 0 for category in CATEGORIES}
        for item in self.items:
            counts[item.category] += 1
        return counts


@dataclass
class TechnicalDebtOptions:
    """Which analyses to run, and the lowest severity worth reporting."""

    min_severity: Severity | None = None
    analyze_retry_patterns: bool = True
    analyze_verification_failures: bool = True
    analyze_decompositions: bool = True
    analyze_error_patterns: bool = True
    analyze_performance: bool = True


@dataclass
class _Occurrences:
    count: int = 0
    iterations: list[int] = field(default_factory=list)


def _analyze_retry_patterns(logs: list[IterationLog]) -> list[TechnicalDebtItem]:
    items = []
    high = [log for log in logs if log.agent.retry_count >= RETRY_THRESHOLD_HIGH]
    medium = [
        log
        for log in logs
        if RETRY_THRESHOLD_MEDIUM <= log.agent.retry_count < RETRY_THRESHOLD_HIGH
    ]

    by_category: dict[str, _Occurrences] = defaultdict(_Occurrences)
    for log in high:
        for context in log.agent.retry_contexts or []:
            entry = by_category[context.failure_category]
            entry.count += 1
            if log.iteration not in entry.iterations:
                entry.iterations.append(log.iteration)

    for category, entry in by_category.items():
        items.append(
            TechnicalDebtItem(
                id=f"retry_patterns-{len(items)}",
                category="retry_patterns",
                severity="critical" if entry.count >= 3 else "high",
                title=f"Recurring {category} failures",
                description=(
                    f"{entry.count} retry attempts due to {category} "
                    f"across {len(entry.iterations)} iterations"
                ),
                occurrences=entry.count,
                affected_iterations=entry.iterations,
                suggested_action=(
                    f"Investigate root cause of {category} failures and add appropriate guardrails"
                ),
            )
        )

    if medium:
        items.append(
            TechnicalDebtItem(
                id=f"retry_patterns-{len(items)}",
                category="retry_patterns",
                severity="medium",
                title="Multiple retry attempts",
                description=f"{len(medium)} iterations required 2 retries",
                occurrences=len(medium),
                affected_iterations=[log.iteration for log in medium],
                suggested_action=(
                    "Review agent prompts and task clarity to reduce retry frequency"
                ),
            )
        )
    return items


def _analyze_verification_failures(logs: list[IterationLog]) -> list[TechnicalDebtItem]:
    by_check: dict[str, _Occurrences] = defaultdict(_Occurrences)
    for log in logs:
        if log.verification is None or log.verification.passed:
            continue
        for check in log.verification.failed_checks:
            by_check[check].count += 1
            by_check[check].iterations.append(log.iteration)

    items = []
    for check, entry in by_check.items():
        items.append(
            TechnicalDebtItem(
                id=f"verification_failures-{len(items)}",
                category="verification_failures",
                severity="high" if entry.count >= VERIFICATION_FAILURE_THRESHOLD_HIGH else "medium",
                title=f"Recurring {check} verification failure",
                description=(
                    f"{check} failed {entry.count} times across {len(entry.iterations)} iterations"
                ),
                occurrences=entry.count,
                affected_iterations=entry.iterations,
                suggested_action=(
                    f"Review {check} check configuration or address underlying code quality issues"
                ),
            )
        )
    return items


def _analyze_decompositions(logs: list[IterationLog]) -> list[TechnicalDebtItem]:
    decomposed = [log for log in logs if log.decomposition is not None]
    if not decomposed:
        return []

    ratio = len(decomposed) / len(logs)
    if ratio >= DECOMPOSITION_RATIO_HIGH:
        severity: Severity = "high"
    elif ratio >= DECOMPOSITION_RATIO_MEDIUM:
        severity = "medium"
    else:
        severity = "low"

    return [
        TechnicalDebtItem(
            id="decomposition_frequency-0",
            category="decomposition_frequency",
            severity=severity,
            title="High task decomposition frequency",
            description=(
                f"{len(decomposed)} of {len(logs)} iterations ({ratio * 100:.1f}%) "
                "required task decomposition"
            ),
            occurrences=len(decomposed),
            affected_iterations=[log.iteration for log in decomposed],
            suggested_action=(
                "Consider pre-decomposing complex tasks in the task list "
                "to reduce iteration overhead"
            ),
        )
    ]


def _analyze_error_patterns(logs: list[IterationLog]) -> list[TechnicalDebtItem]:
    by_message: dict[str, _Occurrences] = defaultdict(_Occurrences)
    for log in logs:
        for error in log.errors:
            key = error.message[:ERROR_MESSAGE_KEY_LENGTH]
            by_message[key].count += 1
            by_message[key].iterations.append(log.iteration)

    items = []
    for message, entry in by_message.items():
        if entry.count < ERROR_REPETITION_THRESHOLD:
            continue
        items.append(
            TechnicalDebtItem(
                id=f"error_patterns-{len(items)}",
                category="error_patterns",
                severity="high" if entry.count >= 4 else "medium",
                title="Recurring error pattern",
                description=f'"{message}..." occurred {entry.count} times',
                occurrences=entry.count,
                affected_iterations=entry.iterations,
                suggested_action="Investigate and address the root cause of this recurring error",
            )
        )
    return items


def _analyze_performance(
    logs: list[IterationLog], statistics: SessionStatistics
) -> list[TechnicalDebtItem]:
    items = []
    average = statistics.average_duration_ms
    slow = [
        log
        for log in logs
        if log.duration_ms is not None and log.duration_ms > average * SLOW_ITERATION_MULTIPLIER
    ]
    if slow and average > 0:
        ratio = len(slow) / len(logs)
        severity: Severity = "high" if ratio >= 0.3 else "medium" if ratio >= 0.15 else "low"
        items.append(
            TechnicalDebtItem(
                id="performance-0",
                category="performance",
                severity=severity,
                title="Slow iterations detected",
                description=(
                    f"{len(slow)} iterations took more than "
                    f"{SLOW_ITERATION_MULTIPLIER}x the average duration"
                ),
                occurrences=len(slow),
                affected_iterations=[log.iteration for log in slow],
                suggested_action=(
                    "Review task complexity and consider splitting slow tasks into smaller units"
                ),
            )
        )

    if statistics.success_rate < LOW_SUCCESS_RATE and statistics.completed_iterations > 0:
        items.append(
            TechnicalDebtItem(
                id="process-0",
                category="process",
                severity="critical" if statistics.success_rate < CRITICAL_SUCCESS_RATE else "high",
                title="Low overall success rate",
                description=(
                    f"Session success rate of {statistics.success_rate:.1f}% "
                    "is below acceptable threshold"
                ),
                occurrences=statistics.failed_iterations,
                affected_iterations=[log.iteration for log in logs if log.status == "failed"],
                suggested_action=(
                    "Review task definitions, verification configuration and agent settings"
                ),
            )
        )
    return items


def _summarize(items: list[TechnicalDebtItem]) -> str:
    if not items:
        return "No significant technical debt detected in this session."

    critical = sum(1 for item in items if item.severity == "critical")
    high = sum(1 for item in items if item.severity == "high")
    other = len(items) - critical - high
    parts = []
    if critical:
        parts.append(f"{critical} critical")
    if high:
        parts.append(f"{high} high priority")
    if other:
        parts.append(f"{other} other")
    return f"Found {len(items)} technical debt items: {', '.join(parts)}"


def _recommend(items: list[TechnicalDebtItem]) -> list[str]:
    recommendations = [
        f"[{item.severity.upper()}] {item.suggested_action}"
        for item in items
        if item.severity in ("critical", "high") and item.suggested_action
    ]
    if not recommendations and items:
        recommendations.append(
            "Review the technical debt items and address them based on priority"
        )
    return recommendations


def analyze_technical_debt(
    session_id: str,
    logs: list[IterationLog],
    statistics: SessionStatistics,
    options: TechnicalDebtOptions | None = None,
) -> TechnicalDebtReport:
    """Analyze a session's iteration logs.

    Args:
        session_id: Identifier of the analyzed session
        logs: Iteration records of the session
        statistics: Session statistics, for averages and success rate
        options: Analyses to run and severity filter

    Returns:
        Report with items sorted from most to least severe
    """
    options = options or TechnicalDebtOptions()
    items: list[TechnicalDebtItem] = []
    if options.analyze_retry_patterns:
        items += _analyze_retry_patterns(logs)
    if options.analyze_verification_failures:
        items += _analyze_verification_failures(logs)
    if options.analyze_decompositions:
        items += _analyze_decompositions(logs)
    if options.analyze_error_patterns:
        items += _analyze_error_patterns(logs)
    if options.analyze_performance:
        items += _analyze_performance(logs, statistics)

    if options.min_severity is not None:
        limit = SEVERITY_ORDER[options.min_severity]
        items = [item for item in items if SEVERITY_ORDER[item.severity] <= limit]
    items.sort(key=lambda item: SEVERITY_ORDER[item.severity])

    return TechnicalDebtReport(
        session_id=session_id,
        analyzed_at=datetime.now(timezone.utc).isoformat(),
        items=items,
        summary=_summarize(items),
        recommendations=_recommend(items),
    )


def format_report(report: TechnicalDebtReport) -> str:
    lines = ["", "=== Technical Debt Review ===", report.summary, ""]
    if not report.items:
        return "\n".join(lines)

    counts = report.items_by_severity
    lines += [
        "Items by severity:",
        f"  Critical: {counts['critical']}",
        f"  High: {counts['high']}",
        f"  Medium: {counts['medium']}",
        f"  Low: {counts['low']}",
        "",
        "Top items:",
    ]
    for item in report.items[:TOP_ITEMS_IN_REPORT]:
        lines.append(f"  [{item.severity.upper()}] {item.title}")
        lines.append(f"    {item.description}")
        if item.suggested_action:
            lines.append(f"    Action: {item.suggested_action}")
    lines.append("")

    if report.recommendations:
        lines.append("Recommendations:")
        lines += [f"  - {recommendation}" for recommendation in report.recommendations]
        lines.append("")
    return "\n".join(lines)


class TechnicalDebtHandler:
    """Runs the review after a completed session and keeps the last report."""

    def __init__(
        self,
        progress_log: ProgressLog | None = None,
        on_state_change: Callable[[bool, TechnicalDebtReport | None], None] | None = None,
    ) -> None:
        self.progress_log = progress_log
        self.on_state_change = on_state_change
        self.last_report: TechnicalDebtReport | None = None
        self.is_running = False

    def reset(self) -> None:
        self.last_report = None
        self.is_running = False

    def run(
        self,
        session_id: str,
        logs: list[IterationLog],
        statistics: SessionStatistics,
        options: TechnicalDebtOptions | None = None,
    ) -> TechnicalDebtReport:
        self.is_running = True
        if self.on_state_change is not None:
            self.on_state_change(True, None)

        report = analyze_technical_debt(session_id, logs, statistics, options)

        self.last_report = report
        self.is_running = False
        if self.on_state_change is not None:
            self.on_state_change(False, report)

        logger.info(report.summary)
        if report.items and self.progress_log is not None:
            self.progress_log.append(format_report(report))
        return report
