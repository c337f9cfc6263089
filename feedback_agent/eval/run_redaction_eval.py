# feedback_agent/eval/run_redaction_eval.py
"""
Redaction completeness evaluation for the feedback agent.

Features:
- Per-category recall (value removed) and category accuracy (right token)
- Clean-control false positive tracking
- Pass/fail against a completeness target (default 99%)
- Progress bar with tqdm
- Results export (JSON)
"""

from __future__ import annotations

import argparse
import json
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import numpy as np
from tqdm import tqdm

from feedback_agent.config import settings
from feedback_agent.errors import RedactionFailure
from feedback_agent.eval.pii_corpus import LabelledSample, get_corpus_stats, iter_samples
from feedback_agent.services.redaction_service import RuleSet, default_provider, load_rule_set, redact

COMPLETENESS_TARGET = 0.99


@dataclass
class SampleResult:
    """Outcome of redacting one labelled sample."""
    id: str
    expected: List[str]
    missed: List[str]           # categories whose value survived redaction
    miscategorized: List[str]   # removed, but under a different token
    changed_clean: bool         # clean control was altered
    latency_ms: float
    success: bool
    error: Optional[str] = None


@dataclass
class CategoryStats:
    total: int = 0
    removed: int = 0
    correct_category: int = 0

    @property
    def recall(self) -> float:
        return self.removed / self.total if self.total else 0.0


@dataclass
class RedactionMetrics:
    """Aggregate evaluation metrics."""
    total_samples: int
    failed_samples: int
    labelled_values: int
    removed_values: int

    # Headline numbers
    completeness: float
    category_accuracy: float

    # Clean controls
    clean_samples: int
    clean_false_positives: int

    # Latency
    latency_p50_ms: Optional[float] = None
    latency_p95_ms: Optional[float] = None

    rule_set_version: str = ""
    per_category: Dict[str, Dict[str, float]] = field(default_factory=dict)

    def passed(self, target: float = COMPLETENESS_TARGET) -> bool:
        return self.failed_samples == 0 and self.completeness >= target


def evaluate_sample(sample: LabelledSample, rule_set: RuleSet) -> SampleResult:
    """Redact one sample and score it against its labels."""
    expected = [category for category, _ in sample.pii]
    start = time.perf_counter()
    try:
        result = redact(sample.text, rule_set)
    except RedactionFailure as e:
        # Fail-closed: nothing was released, but the sample is still a failure.
        return SampleResult(
            id=sample.id,
            expected=expected,
            missed=expected,
            miscategorized=[],
            changed_clean=False,
            latency_ms=(time.perf_counter() - start) * 1000,
            success=False,
            error=f"{e.code}: {e.message}",
        )
    latency_ms = (time.perf_counter() - start) * 1000

    spans = {(s.position, s.original_length): s.category for s in result.spans}
    missed = []
    miscategorized = []
    for category, value in sample.pii:
        if value in result.text:
            missed.append(category)
        elif spans.get((sample.start_of(value), len(value))) != category:
            miscategorized.append(category)

    return SampleResult(
        id=sample.id,
        expected=expected,
        missed=missed,
        miscategorized=miscategorized,
        changed_clean=sample.is_clean and result.text != sample.text,
        latency_ms=latency_ms,
        success=True,
    )


def compute_metrics(
    samples: Sequence[LabelledSample],
    results: Sequence[SampleResult],
    rule_set_version: str = "",
) -> RedactionMetrics:
    """Fold per-sample results into overall and per-category metrics."""
    per_category: Dict[str, CategoryStats] = {}
    for sample, result in zip(samples, results):
        missed = list(result.missed)
        wrong = list(result.miscategorized)
        for category, _ in sample.pii:
            stats = per_category.setdefault(category, CategoryStats())
            stats.total += 1
            if category in missed:
                missed.remove(category)
                continue
            stats.removed += 1
            if category in wrong:
                wrong.remove(category)
            else:
                stats.correct_category += 1

    labelled = sum(s.total for s in per_category.values())
    removed = sum(s.removed for s in per_category.values())
    correct = sum(s.correct_category for s in per_category.values())
    latencies = [r.latency_ms for r in results if r.success]
    clean = [r for s, r in zip(samples, results) if s.is_clean]

    return RedactionMetrics(
        total_samples=len(results),
        failed_samples=sum(1 for r in results if not r.success),
        labelled_values=labelled,
        removed_values=removed,
        completeness=removed / labelled if labelled else 1.0,
        category_accuracy=correct / labelled if labelled else 1.0,
        clean_samples=len(clean),
        clean_false_positives=sum(1 for r in clean if r.changed_clean or not r.success),
        latency_p50_ms=float(np.percentile(latencies, 50)) if latencies else None,
        latency_p95_ms=float(np.percentile(latencies, 95)) if latencies else None,
        rule_set_version=rule_set_version,
        per_category={
            category: {
                "total": stats.total,
                "removed": stats.removed,
                "correct_category": stats.correct_category,
                "recall": round(stats.recall, 4),
            }
            for category, stats in sorted(per_category.items())
        },
    )


def run_evaluation(
    rule_set: Optional[RuleSet] = None,
    categories: Optional[List[str]] = None,
    include_clean: bool = True,
    quiet: bool = True,
) -> tuple:
    """Evaluate the corpus. Returns (samples, results, metrics)."""
    rule_set = rule_set or default_provider.current()
    samples = list(iter_samples(categories, include_clean))
    iterator = samples if quiet else tqdm(samples, desc="Redacting", unit="sample")
    results = [evaluate_sample(sample, rule_set) for sample in iterator]
    return samples, results, compute_metrics(samples, results, rule_set.version)


def save_results(
    results: List[SampleResult],
    metrics: RedactionMetrics,
    output_dir: Path,
    run_name: str,
) -> Dict[str, Path]:
    """Save per-sample results and the metrics summary as JSON."""
    output_dir.mkdir(parents=True, exist_ok=True)
    base_name = f"{run_name}_{datetime.now().strftime('%Y%m%d_%H%M%S')}"

    paths = {}
    results_path = output_dir / f"{base_name}_results.json"
    with open(results_path, "w", encoding="utf-8") as f:
        json.dump([asdict(r) for r in results], f, indent=2)
    paths["results_json"] = results_path

    metrics_path = output_dir / f"{base_name}_metrics.json"
    with open(metrics_path, "w", encoding="utf-8") as f:
        json.dump(asdict(metrics), f, indent=2)
    paths["metrics_json"] = metrics_path
    return paths


def print_report(metrics: RedactionMetrics, results: List[SampleResult], target: float) -> None:
    """Print a readable evaluation report."""
    print("\n" + "=" * 60)
    print("           REDACTION EVALUATION REPORT")
    print("=" * 60)

    print("\n📊 CORPUS")
    print("-" * 40)
    print(f"  Rule set:           {metrics.rule_set_version}")
    print(f"  Samples:            {metrics.total_samples}")
    print(f"  Labelled values:    {metrics.labelled_values}")
    print(f"  Clean controls:     {metrics.clean_samples}")

    print("\n📈 OVERALL")
    print("-" * 40)
    print(f"  Completeness:       {metrics.completeness * 100:.2f}%  (target {target * 100:.0f}%)")
    print(f"  Category accuracy:  {metrics.category_accuracy * 100:.2f}%")
    print(f"  Failed samples:     {metrics.failed_samples}")
    print(f"  Clean altered:      {metrics.clean_false_positives}")
    if metrics.latency_p50_ms is not None:
        print(f"  Latency p50/p95:    {metrics.latency_p50_ms:.3f} / {metrics.latency_p95_ms:.3f} ms")

    print("\n🏷️  PER CATEGORY")
    print("-" * 40)
    for category, stats in metrics.per_category.items():
        print(f"  {category:<12} {stats['removed']:>3}/{stats['total']:<3} recall {stats['recall'] * 100:6.2f}%")

    misses = [r for r in results if r.missed or r.miscategorized or r.changed_clean or not r.success]
    if misses:
        print("\n⚠️  MISSES")
        print("-" * 40)
        for r in misses:
            detail = r.error or f"missed={r.missed} miscategorized={r.miscategorized} clean_altered={r.changed_clean}"
            print(f"  {r.id}: {detail}")

    verdict = "PASS" if metrics.passed(target) else "FAIL"
    print(f"\n{'✅' if verdict == 'PASS' else '❌'} {verdict}\n")


def main():
    parser = argparse.ArgumentParser(
        description="Measure redaction completeness against the labelled synthetic corpus.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Built-in (or REDACTION_RULES_PATH) rule set
  python -m feedback_agent.eval.run_redaction_eval

  # Candidate rule set, saving results
  python -m feedback_agent.eval.run_redaction_eval --rules rules/v2.json --output-dir eval_results
        """,
    )
    parser.add_argument(
        "--rules",
        type=str,
        default=None,
        help=f"Path to a JSON rule set (default: {settings.redaction_rules_path or 'built-in rules'}).",
    )
    parser.add_argument(
        "--categories",
        type=str,
        nargs="+",
        help="Only evaluate samples labelled with these categories (default: all).",
    )
    parser.add_argument(
        "--no-clean",
        action="store_true",
        help="Exclude clean control samples.",
    )
    parser.add_argument(
        "--target",
        type=float,
        default=COMPLETENESS_TARGET,
        help=f"Minimum completeness to pass (default: {COMPLETENESS_TARGET}).",
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        default=None,
        help="Directory to save JSON results (default: don't save).",
    )
    parser.add_argument(
        "--run-name",
        type=str,
        default="redaction_eval",
        help="Name for this evaluation run (default: redaction_eval).",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress progress bar.",
    )

    args = parser.parse_args()

    rule_set = load_rule_set(args.rules) if args.rules else default_provider.current()

    if not args.quiet:
        stats = get_corpus_stats()
        print("\n🔧 CONFIGURATION")
        print("-" * 40)
        print(f"  Rules:      {args.rules or 'default'} ({rule_set.version})")
        print(f"  Corpus:     {stats['total']} samples, {stats['labelled_values']} labelled values")
        print(f"  Categories: {args.categories or 'All'}")

    _, results, metrics = run_evaluation(
        rule_set=rule_set,
        categories=args.categories,
        include_clean=not args.no_clean,
        quiet=args.quiet,
    )

    print_report(metrics, results, args.target)

    if args.output_dir:
        saved_paths = save_results(results, metrics, Path(args.output_dir), args.run_name)
        print("💾 RESULTS SAVED")
        print("-" * 40)
        for name, path in saved_paths.items():
            print(f"  {name}: {path}")
        print()

    raise SystemExit(0 if metrics.passed(args.target) else 1)


if __name__ == "__main__":
    main()
