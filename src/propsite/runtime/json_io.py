from __future__ import annotations

import json

from propsite.runtime.stable_encode import stable_json_value


def dump_json_pretty(payload: object) -> str:
    ordered = stable_json_value(payload, source="dump_json_pretty")
    return json.dumps(ordered, indent=2, sort_keys=False, ensure_ascii=False)
