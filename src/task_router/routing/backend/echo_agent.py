"""Local demo agent for command backend integration tests."""

from __future__ import annotations

import argparse
import math
import os
import sys
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt back with a token count line."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--exit-code", type=int, default=0)
    args = parser.parse_args(argv)

    prompt = Path(args.prompt_file).read_text("utf-8").strip()
    tokens = max(1, math.ceil(len(prompt) / 4))
    backend = os.getenv("TASK_ROUTER_ECHO_BACKEND", "echo_agent")
    sys.stdout.write(f"[{backend}] {prompt}\n{tokens} tokens\n")
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
