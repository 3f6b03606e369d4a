"""
Interactive CLI for a local reasoning model, with Rich UI.

Provides a REPL that runs one generation at a time with:
- Live streaming output, refreshed at a fixed rate
- Plain or Markdown display, with <think> blocks shown as quotes
- A status line with model info, tokens/second and memory usage
- Multiline input with in-session history
"""

import argparse
import logging
import sys
from enum import Enum
from typing import Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.auto_suggest import AutoSuggestFromHistory
from prompt_toolkit.history import InMemoryHistory
from prompt_toolkit.key_binding import KeyBindings
from rich.console import Console, Group
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.text import Text

from .config import config
from .device_stat import DeviceStat
from .generator import GenerationController
from .session import create_controller
from .think_blocks import transform

logger = logging.getLogger(__name__)


class DisplayStyle(str, Enum):
    PLAIN = "plain"
    MARKDOWN = "markdown"


def render_output(text: str, style: DisplayStyle):
    """Render model output either verbatim or as Markdown with quoted reasoning."""
    if style is DisplayStyle.MARKDOWN:
        return Markdown(transform(text), code_theme="monokai")
    return Text(text)


def format_transcript(prompt: str, response: str) -> str:
    """Prompt and response as plain text, ready to copy."""
    return f"{prompt}\n{response}"


class OutputView:
    """Live-refreshed panel mirroring the session fields it is told about."""

    def __init__(self, style: DisplayStyle, device_stat: Optional[DeviceStat] = None):
        self.style = style
        self.device_stat = device_stat
        self.output = ""
        self.model_info = ""
        self.stat = ""

    def on_update(self, field: str, value):
        if field in ("output", "model_info", "stat"):
            setattr(self, field, value)

    def status_line(self) -> Text:
        parts = [p for p in (self.model_info, self.stat) if p]
        if self.device_stat:
            parts.append(self.device_stat.summary())
        return Text(" | ".join(parts), style="dim")

    def __rich__(self):
        return Panel(
            Group(render_output(self.output, self.style), Text(), self.status_line()),
            title="[bold green]Assistant[/bold green]",
            border_style="green",
            padding=(1, 2),
        )


class RichChatCLI:
    """Interactive prompt loop around a single generation session."""

    def __init__(
        self,
        controller: GenerationController,
        display_style: DisplayStyle = DisplayStyle.MARKDOWN,
        device_stat: Optional[DeviceStat] = None,
    ):
        """
        Initialize the chat CLI.

        Args:
            controller: The generation session
            display_style: Initial display style
            device_stat: Memory statistics source for the status line
        """
        self.controller = controller
        self.display_style = display_style
        self.device_stat = device_stat
        self.last_prompt: Optional[str] = None
        self.last_response: Optional[str] = None

        self.console = Console()

        # Key bindings for Meta+Enter to submit
        kb = KeyBindings()

        @kb.add("escape", "enter")
        def _(event):
            """Submit on Meta+Enter (ESC+Enter)"""
            event.current_buffer.validate_and_handle()

        self.session = PromptSession(
            history=InMemoryHistory(),
            auto_suggest=AutoSuggestFromHistory(),
            multiline=True,
            key_bindings=kb,
        )

    def print_welcome(self):
        """Display welcome message with Rich formatting."""
        welcome_text = f"""
# Local Reasoning Chat

**Model**: {self.controller.model_id}
**Display**: {self.display_style.value}

- Press **Meta+Enter** (ESC then Enter) to submit
- Type `/help` for available commands
        """
        self.console.print(Panel(Markdown(welcome_text), border_style="blue", padding=(1, 2)))
        self.console.print()

    def print_help(self):
        """Display help with Rich formatting."""
        help_text = """
| Command | Description |
|---------|-------------|
| `/help`, `/h` | Show this help message |
| `/plain` | Show raw model output |
| `/markdown` | Render output as Markdown, reasoning as quotes |
| `/last` | Print the last prompt and response as plain text |
| `/stat` | Show model info and the last generation speed |
| `/exit`, `/quit`, `/q` | Exit |
        """
        self.console.print(
            Panel(Markdown(help_text), title="[bold green]Help[/bold green]", border_style="green")
        )
        self.console.print()

    def handle_command(self, command: str) -> bool:
        """
        Handle special commands.

        Args:
            command: The command string (including /)

        Returns:
            True if should exit, False otherwise
        """
        cmd = command.lower().strip().split(maxsplit=1)[0]

        if cmd in ["/exit", "/quit", "/q"]:
            self.console.print("\n[yellow]Goodbye![/yellow]\n")
            return True

        elif cmd in ["/help", "/h"]:
            self.print_help()

        elif cmd in ["/plain", "/markdown"]:
            self.display_style = DisplayStyle(cmd[1:])
            self.console.print(f"[green]Display style: {self.display_style.value}[/green]\n")

        elif cmd == "/last":
            if self.last_prompt is None:
                self.console.print("[yellow]Nothing generated yet.[/yellow]\n")
            else:
                self.console.print(Text(format_transcript(self.last_prompt, self.last_response)))
                self.console.print()

        elif cmd == "/stat":
            state = self.controller.state
            self.console.print(f"{state.model_info or 'Model not loaded'}")
            self.console.print(f"{state.stat or 'No generation yet'}")
            if self.device_stat:
                self.console.print(self.device_stat.summary())
            self.console.print()

        else:
            self.console.print(f"[red]Unknown command: {cmd}[/red]")
            self.console.print("Type [green]/help[/green] for available commands\n")

        return False

    def stream_response(self, prompt: str) -> Optional[str]:
        """
        Run one generation with a live display.

        Returns:
            The final output text, or None if a generation was already running
        """
        view = OutputView(self.display_style, self.device_stat)
        view.model_info = self.controller.state.model_info
        self.controller.add_listener(view.on_update)
        try:
            with Live(view, refresh_per_second=10, console=self.console):
                result = self.controller.generate(prompt)
        finally:
            self.controller.remove_listener(view.on_update)

        if result is None:
            return None
        if result.error is not None:
            logger.debug(f"Generation error: {result.error!r}")
        return result.final_text

    def run(self):
        """Start the interactive loop."""
        self.print_welcome()

        while True:
            try:
                user_input = self.session.prompt("You > ", multiline=True).strip()

                if not user_input:
                    continue

                if user_input.startswith("/"):
                    if self.handle_command(user_input):
                        break
                    continue

                self.console.print()
                response = self.stream_response(user_input)
                if response is not None:
                    self.last_prompt = user_input
                    self.last_response = response
                self.console.print()

            except KeyboardInterrupt:
                self.console.print(
                    "\n[yellow]Interrupted. Type /exit to quit.[/yellow]\n"
                )
                continue

            except EOFError:
                self.console.print("\n[yellow]Goodbye![/yellow]\n")
                break


def main():
    """Main entry point for the chat CLI."""
    parser = argparse.ArgumentParser(description="Interactive chat with a local reasoning model")
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
        "--display",
        choices=[s.value for s in DisplayStyle],
        default=config.DISPLAY_STYLE,
        help=f"Output display style (default: {config.DISPLAY_STYLE})",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show detailed technical logs for debugging",
    )

    args = parser.parse_args()

    # Configure logging with Rich handler
    from rich.logging import RichHandler

    log_level = logging.DEBUG if args.verbose else config.get_log_level(logging.WARNING)
    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_time=False, show_path=False)],
    )

    if args.max_tokens:
        config.MAX_TOKENS = args.max_tokens
    if args.temperature is not None:
        config.TEMPERATURE = args.temperature

    console = Console()

    try:
        controller = create_controller(model_id=args.model)

        with console.status("[cyan]Loading model...", spinner="dots", spinner_style="cyan"):
            controller.load()
        console.print(Panel(controller.state.model_info, border_style="cyan"))
        console.print()

        chat = RichChatCLI(
            controller=controller,
            display_style=DisplayStyle(args.display),
            device_stat=DeviceStat(),
        )
        chat.run()

    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted during startup. Exiting...[/yellow]")
        sys.exit(0)

    except Exception as e:
        logger.error(f"Failed to start chat: {e}")
        console.print(f"\n[red]Error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
