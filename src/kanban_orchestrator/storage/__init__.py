from .bootstrap import ensure_state_root, seed_default_columns
from .container import Container

__all__ = ["Container", "ensure_state_root", "seed_default_columns"]
