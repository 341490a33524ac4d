"""
Run the draft refinement demo.

Usage:
    python -m stategraph "graph engines" state routing

Or with custom settings:
    REFINE_MIN_WORDS=20 STATEGRAPH_LOG_LEVEL=DEBUG python -m stategraph "graph engines"
"""

import argparse
import json
import sys

from stategraph.engine.runtime import run_sync
from stategraph.log import configure_logging
from stategraph.workflows.refine import create_refine_workflow


def main(argv=None) -> int:
    """Run the demo workflow and print the result as JSON."""
    parser = argparse.ArgumentParser(prog="stategraph", description=__doc__.splitlines()[1])
    parser.add_argument("topic", help="What the draft is about")
    parser.add_argument("keywords", nargs="*", help="Words the draft must mention")
    parser.add_argument("--log-level", default=None, help="Overrides STATEGRAPH_LOG_LEVEL")
    args = parser.parse_args(argv)

    configure_logging(args.log_level)

    workflow = create_refine_workflow()
    result = run_sync(workflow, {"topic": args.topic, "keywords": args.keywords})
    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0 if result.succeeded else 1


if __name__ == "__main__":
    sys.exit(main())
