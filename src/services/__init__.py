"""Business logic services for the taxonomy self-improvement loop.

Available Services:
    - llm: Completion and embedding capabilities with the shared retry policy
    - extraction: Text normalization and attribute extraction
    - classification: Decision engine and bounded-concurrency runner
    - quality: Run statistics, quality gate and confusion hotlist
    - pipeline: Catalog classification runs
    - learning: Proposals, apply/rollback, benchmark and harness
    - canary: Canary subset selection, state and gate
    - self_improvement: Batch state machine, persistence and orchestrator
"""
