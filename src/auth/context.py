from dataclasses import dataclass


@dataclass
class OperatorContext:
    """Identity context for operator requests (dashboard and internal tooling)."""
    operator_id: str
    email: str
