from __future__ import annotations

import json
from typing import Any, Iterable, Sequence

from localllm.engine import GenerateResponse


def print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, sort_keys=True), flush=True)


def response_to_dict(response: GenerateResponse) -> dict[str, Any]:
    timing = response.timing
    return {
        "text": response.text,
        "state": response.state.value,
        "stop_reason": response.stop_reason.value if response.stop_reason is not None else None,
        "error": response.error.value if response.error is not None else None,
        "message": response.message,
        "usage": {
            "prompt_tokens": response.prompt_tokens,
            "completion_tokens": response.completion_tokens,
            "total_tokens": response.prompt_tokens + response.completion_tokens,
        },
        "timing": None
        if timing is None
        else {
            "prefill_s": timing.prefill_s,
            "decode_s": timing.decode_s,
            "total_s": timing.total_s,
            "tok_per_s": timing.tok_per_s,
        },
    }


def format_table(headers: Sequence[str], rows: Iterable[Sequence[str]]) -> str:
    rows_list = [list(r) for r in rows]
    widths = [len(h) for h in headers]
    for r in rows_list:
        for i, cell in enumerate(r[: len(widths)]):
            widths[i] = max(widths[i], len(cell))

    def fmt_row(cols: Sequence[str]) -> str:
        return "  ".join(c.ljust(widths[i]) if i < len(widths) else c for i, c in enumerate(cols)).rstrip()

    lines = [fmt_row(list(headers)), fmt_row(["-" * w for w in widths])]
    lines.extend(fmt_row(r) for r in rows_list)
    return "\n".join(lines)
