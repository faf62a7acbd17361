from uploadguard.models.findings import Finding, FindingKind, Severity
from uploadguard.models.policy import ResourceLimits
from uploadguard.validators.base import BaseValidator, FindingCollector, ValidationBudget


def oversized_finding(size: int, ceiling: int, validator: str = "generic") -> Finding:
    return Finding(
        kind=FindingKind.OVERSIZED,
        severity=Severity.MEDIUM,
        detail=f"{size} bytes exceeds the {ceiling} byte ceiling",
        validator=validator,
    )


class GenericValidator(BaseValidator):
    """Fallback for media types without a structural validator: size only."""

    name = "generic"

    def inspect(
        self,
        data: bytes,
        limits: ResourceLimits,
        budget: ValidationBudget,
        collector: FindingCollector,
    ) -> None:
        if len(data) > limits.max_file_size_bytes:
            collector.add(oversized_finding(len(data), limits.max_file_size_bytes, self.name))
