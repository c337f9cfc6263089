# feedback_agent/eval/__init__.py
"""
Feedback Agent Evaluation Suite

REDACTION COMPLETENESS:
- Labelled synthetic corpus covering every PII category
- Care-context combinations (room + medication, ward + time)
- Clean controls for false positives
- Per-category recall against a 99% completeness target
"""

from feedback_agent.eval.pii_corpus import (
    CORPUS,
    LabelledSample,
    iter_samples,
    get_corpus_stats,
)

from feedback_agent.eval.run_redaction_eval import (
    COMPLETENESS_TARGET,
    SampleResult,
    RedactionMetrics,
    evaluate_sample,
    compute_metrics,
    run_evaluation,
    save_results,
    print_report,
)

__all__ = [
    "CORPUS",
    "LabelledSample",
    "iter_samples",
    "get_corpus_stats",
    "COMPLETENESS_TARGET",
    "SampleResult",
    "RedactionMetrics",
    "evaluate_sample",
    "compute_metrics",
    "run_evaluation",
    "save_results",
    "print_report",
]
