"""
Codex Engine - A coding agent engine powered by Amazon Bedrock.
Line-oriented terminal front end built with Rich.
"""

import asyncio
import argparse
import functools
import logging
import os
import signal
import sys

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape as rich_escape

from backend import LocalBackend
from bedrock_service import BedrockService, BedrockError
from agent import AgentEvent, EngineFactory, OperationModeState, ToolCall
from config import app_config, model_config, get_model_config, get_credentials_info

# Configure logging to file so it doesn't interfere with the console
logging.basicConfig(
    filename=app_config.log_file,
    level=getattr(logging, app_config.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

console = Console()

TOOL_ICONS = {
    "view_file":          "\U0001f4c4 ",
    "create_file":        "✏️ ",
    "str_replace_editor": "\U0001f527 ",
    "replace_lines":      "\U0001f527 ",
    "bash":               "▶ ",
    "search":             "\U0001f50d ",
    "exit_plan_mode":     "✔ ",
}

HELP_TEXT = """[bold]Commands[/bold]
  /mode    cycle normal -> auto-approve -> planning
  /plan    enter planning mode
  /reset   clear the conversation
  /stats   show context cache statistics
  /exit    quit"""


async def _prompt(text: str) -> str:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: console.input(text))


async def request_approval(call: ToolCall) -> bool:
    answer = await _prompt(
        f"   [bold #d29922]?[/bold #d29922] Allow [bold]{rich_escape(call.name)}[/bold] "
        f"[#6e7681]{rich_escape(call.arguments[:200])}[/#6e7681] [y/N] "
    )
    return answer.strip().lower() in ("y", "yes")


async def render_event(event: AgentEvent, streaming: bool = True) -> None:
    """Print one engine event. Streamed content is written without newlines.

    Without streaming the finished answer is printed as Markdown after the
    turn, so content events are skipped here.
    """
    if event.type == "content":
        if streaming:
            console.print(event.content, end="", markup=False, highlight=False)
    elif event.type == "tool_call":
        icon = TOOL_ICONS.get(event.content, "• ")
        console.print(f"\n   {icon}[#58a6ff]{rich_escape(event.content)}[/#58a6ff]")
    elif event.type == "tool_result":
        data = event.data or {}
        if data.get("success"):
            target = data.get("file_path") or ""
            console.print(f"     [#3fb950]✓[/#3fb950] [#6e7681]{rich_escape(target)}[/#6e7681]")
        else:
            console.print(f"     [#f85149]✗ {rich_escape(event.content[:300])}[/#f85149]")
    elif event.type == "verification" and event.content == "failed":
        console.print(f"     [#d29922]⚠ verification failed for {rich_escape(str((event.data or {}).get('file_path')))}[/#d29922]")
    elif event.type == "gather":
        console.print(f"   [#8957e5]●[/#8957e5] [#8b949e]context: {rich_escape(event.content)}[/#8b949e]")
    elif event.type == "mode_blocked":
        console.print(f"     [#d29922]{rich_escape(event.content)}[/#d29922]")
    elif event.type in ("cancelled", "round_limit"):
        console.print(f"\n   [bold #d29922]{rich_escape(event.content.strip())}[/bold #d29922]")
    elif event.type == "error":
        console.print(f"\n   [bold #f85149]✗ {rich_escape(event.content)}[/bold #f85149]")
    elif event.type == "done":
        console.print()


async def run(working_dir: str, streaming: bool) -> None:
    mode_state = OperationModeState()
    backend = LocalBackend(working_dir)
    try:
        service = BedrockService()
    except BedrockError as e:
        console.print(f"[bold #f85149]✗ Failed to initialize: {rich_escape(str(e))}[/bold #f85149]")
        return

    loop = asyncio.get_running_loop()
    ok, message = await loop.run_in_executor(None, service.test_connection)
    if not ok:
        console.print(f"[bold #f85149]✗ Cannot reach Bedrock: {rich_escape(message)}[/bold #f85149]")
        return

    factory = EngineFactory(service, backend, mode_state=mode_state, request_approval=request_approval)
    engine = factory.build()
    engine.streaming = streaming
    mode_state.on_change(
        lambda new, previous: console.print(f"   [#8b949e]mode: {previous.value} → {new.value}[/#8b949e]")
    )

    console.print(f"[bold]{app_config.title}[/bold] [#8b949e]{get_model_config(model_config.model_id)['name']}[/#8b949e]")
    console.print(f"[#6e7681]{rich_escape(working_dir)} • {get_credentials_info()} • /help for commands[/#6e7681]")

    on_event = render_event if streaming else functools.partial(render_event, streaming=False)
    try:
        while True:
            try:
                task = (await _prompt("\n[bold #f0f6fc]❯ [/bold #f0f6fc]")).strip()
            except (EOFError, KeyboardInterrupt):
                break
            if not task:
                continue
            if task in ("/exit", "/quit"):
                break
            if task == "/help":
                console.print(HELP_TEXT)
                continue
            if task == "/mode":
                mode_state.cycle()
                continue
            if task == "/plan":
                mode_state.enter_plan_mode()
                continue
            if task == "/reset":
                engine.reset()
                console.print("   [#8b949e]conversation cleared[/#8b949e]")
                continue
            if task == "/stats":
                for key, value in factory.cache.stats().items():
                    console.print(f"   [#8b949e]{key:>12}[/#8b949e]  {value}")
                continue

            loop.add_signal_handler(signal.SIGINT, engine.cancel)
            try:
                entries = await engine.run_turn(task, on_event=on_event)
            finally:
                loop.remove_signal_handler(signal.SIGINT)
            if not streaming:
                for entry in entries:
                    if entry.type == "assistant" and entry.content:
                        console.print(Markdown(entry.content))
    finally:
        factory.dispose()


def main():
    parser = argparse.ArgumentParser(
        description="Codex Engine - Coding Agent Engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py                    Run in current directory
  python main.py -d ~/my-project    Run in a specific project directory
  python main.py --no-stream        Wait for whole responses instead of streaming
        """,
    )
    parser.add_argument(
        "-d", "--directory",
        default=app_config.working_directory,
        help="Working directory for the agent (default: current directory)",
    )
    parser.add_argument(
        "--no-stream",
        action="store_true",
        help="Disable streaming responses",
    )

    args = parser.parse_args()

    working_dir = os.path.abspath(os.path.expanduser(args.directory))
    if not os.path.isdir(working_dir):
        print(f"Error: {working_dir} is not a directory")
        sys.exit(1)

    asyncio.run(run(working_dir, streaming=app_config.streaming and not args.no_stream))


if __name__ == "__main__":
    main()
