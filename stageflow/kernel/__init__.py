"""stageflow kernel: domain model, ports and orchestration.

The kernel depends on ports only; concrete drivers live in
``stageflow.drivers`` and are imported lazily where a default is needed.
"""
