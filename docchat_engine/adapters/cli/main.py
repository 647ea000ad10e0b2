"""CLI JSON-lines adapter: chats about an HTML file, prints EngineEvents as JSON."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from docchat_engine import create_engine
from docchat_engine.engine.session import AuthoringSession


async def run_cli(
    messages: list[str],
    document: Path | None = None,
    sources: list[Path] | None = None,
    output: Path | None = None,
) -> None:
    engine = create_engine()
    session = AuthoringSession(session_id="cli-default")
    session.source_documents = [p.read_text() for p in sources or []]
    if document is not None:
        engine.load_generated_document(session, document.read_text())

    for text in messages:
        async for event in engine.send_message(session, text):
            print(json.dumps(event.model_dump(mode="json"), default=str), flush=True)

    if output is not None and session.ledger.current_id is not None:
        output.write_text(session.ledger.content)


def main() -> None:
    parser = argparse.ArgumentParser(prog="docchat-cli", description=__doc__)
    parser.add_argument("text", nargs="*", help="message to send (default: one message per stdin line)")
    parser.add_argument("-d", "--document", type=Path, help="HTML document to load as the initial version")
    parser.add_argument("-s", "--source", type=Path, action="append", default=[], help="source document (repeatable)")
    parser.add_argument("-o", "--output", type=Path, help="write the final document here")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.text:
        messages = [" ".join(args.text)]
    else:
        messages = []
        for line in sys.stdin:
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
                messages.append(data.get("text", line) if isinstance(data, dict) else line)
            except json.JSONDecodeError:
                messages.append(line)
        if not messages:
            parser.print_usage(sys.stderr)
            sys.exit(1)

    asyncio.run(run_cli(messages, args.document, args.source, args.output))


if __name__ == "__main__":
    main()
