"""CLI interface: narrate a text document sentence by sentence."""

import argparse
import asyncio
import logging
import os
import sys

import pyttsx3

from storyteller.constants import (
    DEFAULT_ENGINE,
    EDGE_VOICES,
    ENGINES,
    OPENAI_VOICES,
    VERSION,
)
from storyteller.controller import SequenceController
from storyteller.device import DeviceAudioSink
from storyteller.document import read_document
from storyteller.models import Document, PlaybackState
from storyteller.scheduler import PlaybackScheduler
from storyteller.tts import build_backend

INTERACTIVE_HELP = (
    "Commands: p = play/pause, s = stop, n = next, b = back, "
    "g <n> = go to sentence, page <n> = go to page, q = quit"
)


def _load(file_path: str) -> Document:
    """Read and segment a document, exiting with an error if it is unusable."""
    if not os.path.exists(file_path):
        print(f"Error: File not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)

    document = read_document(file_path)
    if not document.segments:
        print(f"Error: No sentences found in: {file_path}", file=sys.stderr)
        raise SystemExit(1)
    return document


class _ProgressPrinter:
    """Prints each sentence as it starts, plus the tone when one is detected."""

    def __init__(self, document: Document):
        self.document = document
        self.last_index = None
        self.last_tone = None

    def __call__(self, state: PlaybackState) -> None:
        if not state.is_playing:
            self.last_index = None
            return
        total = len(self.document.segments)
        if state.current_index != self.last_index:
            self.last_index = state.current_index
            self.last_tone = None
            text = self.document.segments[state.current_index]
            if text.strip():
                print(f"  [{state.current_index + 1}/{total}] {text}")
        if state.detected_tone and state.detected_tone != self.last_tone:
            self.last_tone = state.detected_tone
            print(f"      tone: {state.detected_tone}")


def _report_error(index: int, error: Exception) -> None:
    print(f"Error: sentence {index + 1}: {error}", file=sys.stderr)
    print("Playback stopped. Press play to retry.", file=sys.stderr)


async def _dispatch(controller: SequenceController, line: str) -> bool:
    """Apply one interactive command. Returns False when the user quits."""
    parts = line.strip().split()
    if not parts:
        return True
    command, values = parts[0].lower(), parts[1:]

    if command == "q":
        return False
    if command == "p":
        controller.toggle()
    elif command == "s":
        controller.stop()
    elif command == "n":
        await controller.step(1)
    elif command == "b":
        await controller.step(-1)
    elif command in ("g", "page"):
        if not values or not values[0].isdigit():
            print(f"Error: '{command}' requires a number", file=sys.stderr)
            return True
        number = int(values[0]) - 1
        if command == "g":
            await controller.seek_to_index(number)
        else:
            await controller.seek_to_page(number)
    else:
        print(INTERACTIVE_HELP)
    return True


async def _interactive(controller: SequenceController) -> None:
    loop = asyncio.get_running_loop()
    print(INTERACTIVE_HELP)
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:  # EOF
            return
        if not await _dispatch(controller, line):
            return


async def narrate(
    document: Document,
    engine: str,
    voice: str | None = None,
    speed: float = 1.0,
    pitch: float = 1.0,
    sentence: int = 0,
    page: int | None = None,
    interactive: bool = False,
    sink=None,
) -> PlaybackState:
    """Narrate document from a sentence (or page) until the end or until the user quits."""
    backend = build_backend(engine, voice=voice, speed=speed, pitch=pitch)
    owned = sink is None
    if owned:
        sink = DeviceAudioSink()
    scheduler = PlaybackScheduler(
        document.segments,
        backend,
        sink,
        on_error=_report_error,
    )
    controller = SequenceController(scheduler, document)
    scheduler.add_listener(_ProgressPrinter(document))

    try:
        if page is not None:
            started = await controller.seek_to_page(page)
        else:
            started = await controller.seek_to_index(sentence)
        if started is None:
            print("Error: Start position is outside the document.", file=sys.stderr)
            return scheduler.state

        if interactive:
            await _interactive(controller)
        else:
            await scheduler.wait_until_idle()
        return scheduler.state
    finally:
        await scheduler.shutdown()
        if owned:
            sink.close()


def cmd_read(args):
    """Narrate a document."""
    document = _load(args.file)
    page = args.page - 1 if args.page is not None else None
    print(f"Loaded {len(document.segments)} sentences on {len(document.page_mapping)} pages")
    print(f"Engine: {args.engine}")

    try:
        asyncio.run(
            narrate(
                document,
                args.engine,
                voice=args.voice,
                speed=args.rate,
                pitch=args.pitch,
                sentence=args.sentence - 1,
                page=page,
                interactive=args.interactive,
            )
        )
    except KeyboardInterrupt:
        print("\nStopped.")
        return
    print("Done.")


def cmd_info(args):
    """Show how a document was split into sentences and pages."""
    document = _load(args.file)
    print(f"Document: {args.file}")
    print(f"Sentences: {len(document.segments)}")
    print(f"Pages: {len(document.page_mapping)}")
    for page, first in enumerate(document.page_mapping):
        opening = document.segments[first] if first < len(document.segments) else "(empty)"
        if len(opening) > 60:
            opening = opening[:57] + "..."
        print(f"  page {page + 1:<4} sentence {first + 1:<6} {opening}")


def _local_voices() -> list[str]:
    engine = pyttsx3.init()
    return [voice.id for voice in engine.getProperty("voices")]


def cmd_voices(args):
    """List available voices."""
    if args.engine == "edge":
        voices = list(EDGE_VOICES)
    elif args.engine == "openai":
        voices = list(OPENAI_VOICES)
    else:
        voices = _local_voices()

    filter_str = args.filter.lower() if args.filter else None
    if filter_str:
        voices = [v for v in voices if filter_str in v.lower()]
    if not voices:
        print("No matching voices found.")
        return
    print(f"Available voices ({args.engine}):")
    for v in voices:
        print(f"  {v}")


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be 1 or greater, got {value}")
    return number


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="storyteller",
        description="Storyteller: narrate documents sentence by sentence",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # read
    read_parser = subparsers.add_parser("read", help="Narrate a text document")
    read_parser.add_argument("file", help="Path to a UTF-8 text file (form feeds separate pages)")
    read_parser.add_argument("--engine", choices=ENGINES, default=DEFAULT_ENGINE, help="Speech engine")
    read_parser.add_argument("--voice", help="Voice name for the chosen engine")
    read_parser.add_argument("--rate", type=float, default=1.0, help="Speed multiplier (1.0 = normal)")
    read_parser.add_argument("--pitch", type=float, default=1.0, help="Pitch multiplier for the local device voice (0.0-2.0)")
    start = read_parser.add_mutually_exclusive_group()
    start.add_argument("--sentence", type=_positive_int, default=1, help="Sentence number to start at")
    start.add_argument("--page", type=_positive_int, help="Page number to start at")
    read_parser.add_argument("-i", "--interactive", action="store_true", help="Control playback from stdin")
    read_parser.set_defaults(func=cmd_read)

    # info
    info_parser = subparsers.add_parser("info", help="Show sentence and page split of a document")
    info_parser.add_argument("file", help="Path to the text file")
    info_parser.set_defaults(func=cmd_info)

    # voices
    voices_parser = subparsers.add_parser("voices", help="List available voices")
    voices_parser.add_argument("--engine", choices=ENGINES, default=DEFAULT_ENGINE, help="Speech engine")
    voices_parser.add_argument("--filter", help="Filter voices by substring")
    voices_parser.set_defaults(func=cmd_voices)

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return

    args.func(args)
