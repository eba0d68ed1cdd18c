"""
Interactive terminal client for a BatchQuery analysis server.
Images are added from local paths and questions go to a remote /analyze endpoint.
"""

import argparse
import logging
import shutil
import subprocess
import sys
from typing import Callable, List, Optional

from chat_session import BOT, ChatSession, HttpAnalysisTransport
from image_intake import CandidateFile

DEFAULT_URL = "http://127.0.0.1:5000/analyze"

KIND_COLORS = {
    "user": "1;34",
    "bot": "1;32",
    "error": "1;31",
}

KIND_LABELS = {
    "user": "You",
    "bot": "Assistant",
    "error": "Error",
}

HELP_TEXT = """Commands:
  /add PATH [PATH ...]   upload images (max 4, JPG/PNG/GIF/WebP, 10MB each)
  /images                list uploaded images
  /remove N              remove image number N
  /clear                 remove all images
  /copy                  copy the last answer to the clipboard
  /reset                 start a new chat
  /quit                  exit
Anything else is sent as a question about the uploaded images."""

# Tried in order; the first one found on PATH is used.
CLIPBOARD_COMMANDS = [
    ["pbcopy"],
    ["wl-copy"],
    ["xclip", "-selection", "clipboard"],
    ["clip"],
]


def system_clipboard_writer() -> Callable[[str], None]:
    def write(text: str) -> None:
        for command in CLIPBOARD_COMMANDS:
            if shutil.which(command[0]):
                subprocess.run(command, input=text.encode("utf-8"), check=True)
                return
        raise RuntimeError("no clipboard command available")

    return write


def format_message(message) -> str:
    color = KIND_COLORS.get(message.kind, "1;33")
    label = KIND_LABELS.get(message.kind, message.kind)
    text = f"\033[{color}m{label}: \033[0m{message.content}"
    if message.images:
        names = ", ".join(image.name for image in message.images)
        text += f"\n  \033[2m[{names}]\033[0m"
    return text


def print_toasts(chat: ChatSession, out=sys.stdout) -> None:
    for toast in chat.drain_notifications():
        marker = "!" if toast.variant == "destructive" else "*"
        print(f"{marker} {toast.title}: {toast.description}", file=out)


def print_images(chat: ChatSession, out=sys.stdout) -> None:
    intake = chat.intake
    for number, image in enumerate(intake.images, start=1):
        print(f"  {number}. {image.name} ({image.size / 1024 / 1024:.1f}MB)", file=out)
    summary = intake.status_line
    if intake.images:
        summary += f" ({intake.total_size_mb}MB total)"
    print(summary, file=out)


def last_answer_id(chat: ChatSession) -> Optional[str]:
    for message in reversed(chat.messages):
        if message.kind == BOT:
            return message.id
    return None


def handle_command(chat: ChatSession, line: str, clipboard: Callable[[str], None], out=sys.stdout) -> bool:
    """Handle one input line. Returns False when the session should end."""
    command, _, rest = line.strip().partition(" ")
    command = command.lower()

    if command in ("/quit", "/exit"):
        return False
    if command == "/help":
        print(HELP_TEXT, file=out)
    elif command == "/add":
        candidates: List[CandidateFile] = []
        for path in rest.split():
            try:
                candidates.append(CandidateFile.from_path(path))
            except OSError as exc:
                print(f"Cannot open {path}: {exc.strerror or exc}", file=out)
                return True
        chat.intake.submit(candidates)
        if chat.intake.error:
            print(chat.intake.error, file=out)
        print_images(chat, out)
    elif command == "/images":
        print_images(chat, out)
    elif command == "/remove":
        images = chat.intake.images
        try:
            image = images[int(rest) - 1]
        except (ValueError, IndexError):
            print(f"Usage: /remove N (1-{len(images)})" if images else "No images uploaded", file=out)
            return True
        chat.intake.remove(image.id)
        print_images(chat, out)
    elif command == "/clear":
        chat.intake.clear()
    elif command == "/copy":
        message_id = last_answer_id(chat)
        if message_id is None:
            print("Nothing to copy yet", file=out)
        else:
            chat.copy_message(message_id, clipboard)
    elif command == "/reset":
        chat.reset()
    elif command.startswith("/"):
        print(f"Unknown command {command}. Type /help for a list.", file=out)
    else:
        print("Analyzing...", file=out)
        result = chat.send(line)
        if result.status in ("invalid", "busy"):
            print(result.error, file=out)
        elif result.message is not None:
            print(format_message(result.message), file=out)
    print_toasts(chat, out)
    return True


def chat_loop(chat: ChatSession, clipboard: Callable[[str], None]) -> None:
    print("\033[1;36m=== BatchQuery Chat ===\033[0m")
    print(HELP_TEXT + "\n")
    try:
        while True:
            line = input("> ")
            if not line.strip():
                continue
            if not handle_command(chat, line, clipboard):
                print("Ending chat session.")
                break
    except (KeyboardInterrupt, EOFError):
        print("\nEnding chat session.")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Ask a vision model questions about up to four images")
    parser.add_argument("--url", default=DEFAULT_URL, help="analysis endpoint URL")
    parser.add_argument("--timeout", type=float, default=60.0, help="request timeout in seconds")
    parser.add_argument("--verbose", action="store_true", help="log transport details")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    chat = ChatSession(transport=HttpAnalysisTransport(args.url, timeout=args.timeout))
    chat_loop(chat, system_clipboard_writer())


if __name__ == "__main__":
    main()
