"""
Core mixins for HydroAssim modules.

Usage:
    from hydroassim.core.mixins import TimingMixin

    class MyStage(TimingMixin):
        def run(self):
            with self.time_limit("observation download"):
                ...
"""

from .timing import TimingMixin

__all__ = ["TimingMixin"]
