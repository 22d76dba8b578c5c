"""Self-healing decision pipeline for merchant platform migrations.

Raw anomaly signals are clustered into observations, scored for risk,
classified, and routed to a remediation action. Each module is usable on
its own; ``selfheal.pipeline`` wires them into one pass and is also the CLI.
"""

from selfheal.pipeline import PipelineError, PipelineOrchestrator
from selfheal.store import InMemoryEventStore

__all__ = ["InMemoryEventStore", "PipelineError", "PipelineOrchestrator"]
