from buildfleet.spec.preemption import (
    Preemption,
    PreemptionConfig,
    PreemptionPolicy,
    normalize_preemption,
)

__all__ = ["Preemption", "PreemptionConfig", "PreemptionPolicy", "normalize_preemption"]
