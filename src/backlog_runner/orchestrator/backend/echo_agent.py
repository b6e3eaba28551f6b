"""Local demo agent for CLI engine integration tests.

Prints a stream-json transcript echoing the prompt, the way real agent CLIs
report their final result and usage.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt back as a stream-json result."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--model", default="")
    parser.add_argument("--fail-with", default=None)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--input-tokens", type=int, default=100)
    parser.add_argument("--output-tokens", type=int, default=50)
    args, _ = parser.parse_known_args(argv)

    prompt = Path(args.prompt_file).read_text("utf-8").strip()
    print(json.dumps({"type": "system", "subtype": "init", "model": args.model}))  # noqa: T201
    print(json.dumps({"type": "assistant", "tool": "Read"}))  # noqa: T201
    if args.fail_with:
        print(json.dumps({"type": "error", "error": {"message": args.fail_with}}))  # noqa: T201
        return args.exit_code or 1

    print(  # noqa: T201
        json.dumps(
            {
                "type": "result",
                "subtype": "success",
                "result": f"echo: {prompt.splitlines()[0] if prompt else ''}",
                "usage": {
                    "input_tokens": args.input_tokens,
                    "output_tokens": args.output_tokens,
                },
                "total_cost_usd": 0.01,
            },
        ),
    )
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
