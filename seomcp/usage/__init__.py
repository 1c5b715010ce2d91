from .tracker import Principal, RateCheck, UsageTracker

__all__ = ["Principal", "RateCheck", "UsageTracker"]
