from __future__ import annotations

from collections.abc import Mapping
from typing import Any

REBOOT_ANNOTATION = "reboot-agent.v1.sdlt.local/reboot"
REBOOT_NEEDED_ANNOTATION = "reboot-agent.v1.sdlt.local/reboot-needed"
REBOOT_IN_PROGRESS_ANNOTATION = "reboot-agent.v1.sdlt.local/reboot-in-progress"

DEFAULT_RESTART_ANNOTATION = "kubectl.kubernetes.io/restartedAt"


def normalize_annotations(raw: Any) -> dict[str, str]:
    """Coerce an annotation mapping into a plain ``dict[str, str]``.

    ``None`` and non-mapping inputs become ``{}``; ``None`` values become
    ``""`` so that presence-only flags survive normalisation.
    """
    if not isinstance(raw, Mapping):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in raw.items()
        if isinstance(k, str)
    }


def annotations_changed(old: Mapping[str, str] | None, new: Mapping[str, str] | None) -> bool:
    """Return True iff the two annotation mappings differ in size or in any value."""
    a = normalize_annotations(old)
    b = normalize_annotations(new)
    if len(a) != len(b):
        return True
    return any(key not in b or b[key] != value for key, value in a.items())


def annotations_of(obj: Any) -> dict[str, str]:
    """Extract ``metadata.annotations`` from a Kubernetes object safely."""
    metadata = getattr(obj, "metadata", None)
    return normalize_annotations(getattr(metadata, "annotations", None))


def template_annotations_of(obj: Any) -> dict[str, str]:
    """Extract pod template annotations from a workload object safely."""
    spec = getattr(obj, "spec", None)
    template = getattr(spec, "template", None)
    metadata = getattr(template, "metadata", None)
    return normalize_annotations(getattr(metadata, "annotations", None))


def merge_patch_for(
    old: Mapping[str, str], new: Mapping[str, str]
) -> dict[str, str | None]:
    """Build the annotation section of a merge patch turning *old* into *new*.

    Added or changed keys carry their new value; removed keys map to
    ``None``, which the API server interprets as a deletion.
    """
    patch: dict[str, str | None] = {
        key: value for key, value in new.items() if old.get(key) != value
    }
    for key in old:
        if key not in new:
            patch[key] = None
    return patch
