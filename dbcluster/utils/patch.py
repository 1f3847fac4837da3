"""
JSON merge patch (RFC 7386) helpers.
"""
from typing import Any, Dict


def create_merge_patch(original: Dict[str, Any], modified: Dict[str, Any]) -> Dict[str, Any]:
    """
    Compute the merge patch that turns ``original`` into ``modified``.

    Keys missing from ``modified`` are emitted as None so the server deletes
    them. Lists are replaced wholesale, as merge patch semantics require.
    """
    patch: Dict[str, Any] = {}
    for key in original:
        if key not in modified:
            patch[key] = None
    for key, value in modified.items():
        old = original.get(key, _MISSING)
        if isinstance(value, dict) and isinstance(old, dict):
            nested = create_merge_patch(old, value)
            if nested:
                patch[key] = nested
        elif old is _MISSING:
            if value is not None:
                patch[key] = value
        elif old != value:
            patch[key] = value
    return patch


def apply_merge_patch(target: Any, patch: Any) -> Any:
    """Apply a merge patch to a JSON document and return the result."""
    if not isinstance(patch, dict):
        return patch
    result = dict(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = apply_merge_patch(result.get(key), value)
    return result


_MISSING = object()
