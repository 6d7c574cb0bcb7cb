"""Local stand-in agent for CLI executor integration tests."""

from __future__ import annotations

import argparse
import json
import sys
import time
import uuid


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt back as a headless-agent JSON result line."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt", required=True)
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--fail", action="store_true")
    parser.add_argument("--session-id", default=None)
    args = parser.parse_args(argv)

    if args.sleep > 0:
        time.sleep(args.sleep)

    print(json.dumps({"type": "system", "subtype": "init"}))
    payload = {
        "type": "result",
        "subtype": "error" if args.fail else "success",
        "is_error": args.fail,
        "result": f"echo: {args.prompt.splitlines()[0] if args.prompt else ''}",
        "session_id": args.session_id or str(uuid.uuid4()),
        "total_cost_usd": 0.0,
    }
    print(json.dumps(payload, ensure_ascii=False))
    return 1 if args.fail else 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
