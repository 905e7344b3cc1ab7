"""
CLI Demo Application
Demonstrates the expense assistant: add receipts by chatting, confirm them, then ask about spending.
"""

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.prompt import Prompt
from rich.markdown import Markdown

_PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, _PROJECT_ROOT)
_DEFAULT_LOG_DIR = os.path.join(_PROJECT_ROOT, "conversation_logger", "cli")

from expense_assistant import ChatAssistant, ErrorResponse, load_settings
from expense_assistant.schema.labels import Speaker
from expense_assistant.utils.conversation_logger import ConversationLogger

console = Console()


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


async def run(args: argparse.Namespace) -> None:
    settings = load_settings()
    if args.model:
        settings = settings.model_copy(update={"model": args.model})
    _configure_logging("DEBUG" if args.verbose else settings.log_level)

    # Initialize assistant
    try:
        assistant = ChatAssistant(settings=settings, enable_semantic=not args.no_semantic)
    except Exception as e:
        console.print(f"[red]Error initializing assistant: {e}[/red]")
        console.print("\n[bold]Make sure you have:[/bold]")
        console.print("  1. Set GEMINI_API_KEY (or GOOGLE_API_KEY) in .env")
        console.print("  2. Run: pip install -e .")
        sys.exit(1)

    # Conversation log: default to conversation_logger/cli/ unless --no-log or --log-file overrides
    conversation_log = None
    if not args.no_log:
        if args.log_file:
            log_path = os.path.abspath(args.log_file)
            if os.path.isdir(log_path):
                ts = datetime.now().strftime("%Y%m%d_%H%M%S")
                log_path = os.path.join(log_path, f"cli_conversation_{ts}.jsonl")
        else:
            os.makedirs(_DEFAULT_LOG_DIR, exist_ok=True)
            ts = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_path = os.path.join(_DEFAULT_LOG_DIR, f"cli_{ts}.jsonl")
        conversation_log = ConversationLogger(log_path)
        console.print(f"[dim]Conversation log: {log_path}[/dim]")

    session_id = None
    if args.load_log:
        session_id = await assistant.load_conversation_log(args.load_log, args.user)

    console.print(Panel(
        "[bold cyan]Expense Assistant Demo[/bold cyan]\n\n"
        "Try: 'I bought 2 coffees at Starbucks for 300' then 'yes',\n"
        "or ask 'how much did I spend on food last month?'\n\n"
        "Commands: 'exit'/'quit' to exit | 'session' to show the session state | 'end' to end the chat",
        title="Welcome",
        border_style="cyan"
    ))
    console.print()

    try:
        while True:
            try:
                user_input = Prompt.ask("[bold green]You[/bold green]")
            except KeyboardInterrupt:
                console.print("\n[yellow]Interrupted. Type 'exit' to quit.[/yellow]\n")
                continue

            command = user_input.strip().lower()
            if command in ("exit", "quit", "q"):
                console.print("[yellow]Goodbye![/yellow]")
                break

            if command == "session":
                if session_id:
                    assistant.display_session(session_id)
                else:
                    console.print("[red]No active session yet[/red]")
                continue

            if command == "end":
                result = await assistant.end_session(session_id, args.user)
                if result.success:
                    console.print("[green]Chat saved. Starting a new session.[/green]\n")
                    session_id = None
                else:
                    console.print(f"[red]{result.message}[/red]\n")
                continue

            if not command:
                continue

            response = await assistant.process_text(args.user, user_input, session_id=session_id)

            if isinstance(response, ErrorResponse):
                console.print(f"[red]{response.kind}: {response.message}[/red]\n")
                if conversation_log:
                    conversation_log.log_turn(Speaker.USER, user_input, session_id)
                    conversation_log.log_turn(
                        Speaker.BOT, response.message, session_id, metadata={"error_kind": response.kind}
                    )
                continue

            session_id = response.session_id
            console.print(Panel(
                Markdown(response.response_text.replace("\\n", "\n")),
                title="[bold blue]Assistant[/bold blue]",
                border_style="blue"
            ))

            if conversation_log:
                conversation_log.log_exchange(user_input, response.response_text, session_id)

            if args.verbose:
                assistant.display_session(session_id)
    finally:
        # Chats are written durably on the way out
        await assistant.shutdown()


def main():
    """Main CLI demo"""
    parser = argparse.ArgumentParser(description="Expense Assistant Demo (Gemini)")
    parser.add_argument(
        "--model",
        type=str,
        default=None,
        help="Gemini model name (default: gemini-2.0-flash)"
    )
    parser.add_argument(
        "--user",
        type=str,
        default="demo-user",
        help="User id that owns the receipts created in this session"
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Path to JSONL log file or directory for saving the conversation (default: conversation_logger/cli/)"
    )
    parser.add_argument(
        "--no-log",
        action="store_true",
        help="Do not save conversation log (disable default logging to conversation_logger/cli/)"
    )
    parser.add_argument(
        "--load-log",
        type=str,
        default=None,
        help="Path to conversation log to load into a new session"
    )
    parser.add_argument(
        "--no-semantic",
        action="store_true",
        help="Answer spending questions with the structured query path only"
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Show debug logs and the session state after each turn"
    )

    args = parser.parse_args()
    asyncio.run(run(args))


if __name__ == "__main__":
    main()
