from .expiration_sweeper import ExpirationSweeper, SweepResult

__all__ = [
    "ExpirationSweeper",
    "SweepResult",
]
