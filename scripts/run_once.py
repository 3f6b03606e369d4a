#!/usr/bin/env python3
"""
One-off text generation script.

Usage:
    python scripts/run_once.py --prompt "Your question here"
    python scripts/run_once.py --prompt "Why is the sky blue?" --max-tokens 256
    echo "What is Python?" | python scripts/run_once.py --raw
"""

import argparse
import logging
import sys
from pathlib import Path

# Add the repository root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from thinkchat.config import config
from thinkchat.session import create_controller
from thinkchat.think_blocks import transform


def main():
    """Main entry point for one-off text generation."""
    parser = argparse.ArgumentParser(
        description="Generate text with a local reasoning model",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/run_once.py --prompt "What is the meaning of life?"
  python scripts/run_once.py --prompt "Explain AI" --max-tokens 128
  echo "What is Python?" | python scripts/run_once.py --raw
        """,
    )

    parser.add_argument(
        "--prompt",
        type=str,
        default=None,
        help="The prompt to generate from (if not provided, reads from stdin)",
    )
    parser.add_argument(
        "--model", type=str, default=None, help=f"Model ID (default: {config.MODEL_ID})"
    )
    parser.add_argument(
        "--max-tokens",
        type=int,
        default=None,
        help=f"Maximum tokens to generate (default: {config.MAX_TOKENS})",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=None,
        help=f"Sampling temperature (default: {config.TEMPERATURE})",
    )
    parser.add_argument(
        "--raw",
        action="store_true",
        help="Print the output verbatim instead of quoting reasoning blocks",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")

    args = parser.parse_args()

    # Configure logging
    log_level = logging.DEBUG if args.verbose else config.get_log_level(logging.INFO)
    logging.basicConfig(
        level=log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    logger = logging.getLogger(__name__)

    # Get prompt from args or stdin
    if args.prompt:
        prompt = args.prompt
    else:
        if sys.stdin.isatty():
            parser.error("No prompt provided. Use --prompt or pipe input via stdin")
        prompt = sys.stdin.read().strip()
        if not prompt:
            parser.error("Empty prompt provided")

    logger.info(f"Prompt: {prompt[:100]}{'...' if len(prompt) > 100 else ''}")

    if args.temperature is not None:
        config.TEMPERATURE = args.temperature

    try:
        print("Loading model... (this may take a while on first run)", file=sys.stderr)
        controller = create_controller(model_id=args.model, max_tokens=args.max_tokens)
        controller.load()
        print(controller.state.model_info, file=sys.stderr)
        print("-" * 60, file=sys.stderr)

        print("\n[Generating...]", file=sys.stderr)
        result = controller.generate(prompt)

        print("-" * 60, file=sys.stderr)
        print("\n[Output]\n", file=sys.stderr)

        # Print output to stdout (clean, no prefix)
        print(result.final_text if args.raw else transform(result.final_text))

        if result.error is not None:
            sys.exit(1)

        print(f"\n{controller.state.stat}", file=sys.stderr)
        logger.info("Generation completed successfully")

    except KeyboardInterrupt:
        print("\n\nInterrupted by user", file=sys.stderr)
        sys.exit(130)

    except Exception as e:
        logger.error(f"Error: {e}", exc_info=args.verbose)
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
