# expressions.py
from __future__ import annotations

import re
from typing import Any, Dict, Mapping

_EXPR = re.compile(r"\$\{\{\s*([A-Za-z0-9_.-]*?)\s*\}\}")


def resolve(path: str, context: Mapping[str, Any]) -> Any:
    """Dotted lookup: resolve("needs.build.outputs.version", ctx). Missing -> None."""
    cur: Any = context
    for part in path.split("."):
        if isinstance(cur, Mapping) and part in cur:
            cur = cur[part]
        else:
            return None
    return cur


def _render(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def interpolate(text: str, context: Mapping[str, Any]) -> str:
    """Substitute every ${{ path }} in `text`; unknown references become ""."""
    if "${{" not in text:
        return text
    return _EXPR.sub(lambda m: _render(resolve(m.group(1), context)), text)


def interpolate_map(values: Mapping[str, str], context: Mapping[str, Any]) -> Dict[str, str]:
    return {k: interpolate(v, context) for k, v in values.items()}
