"""
Rich terminal rendering for unified responses and event streams.
"""
import json
from typing import Any, AsyncIterator, Dict, Optional

from rich.console import Console, Group
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.syntax import Syntax
from rich.text import Text

from .arguments import arguments_to_native
from .streaming import collect_stream
from .types import (
    Done, ProviderResponse, StreamEvent, TextDelta, ToolCallEnd, ToolCallStart,
)


def response_metadata(response: ProviderResponse, label: Optional[str] = None) -> Dict[str, Any]:
    """Summary shown beneath a rendered response."""
    meta: Dict[str, Any] = {"finish_reason": response.finish_reason.value}
    if label:
        meta["provider"] = label
    if response.usage is not None:
        meta["usage"] = {
            "input_tokens": response.usage.input_tokens,
            "output_tokens": response.usage.output_tokens,
            "total_tokens": response.usage.total_tokens,
        }
    if response.tool_calls:
        meta["tool_calls"] = [
            {"id": c.id, "name": c.name, "arguments": arguments_to_native(c.arguments)}
            for c in response.tool_calls
        ]
    return meta


def _metadata_panel(meta: Dict[str, Any]) -> Panel:
    display = Syntax(
        json.dumps(meta, indent=2, default=str),
        "json",
        theme="lightbulb",
        background_color="default",
    )
    return Panel(display, title="[bold]Metadata[/bold]", border_style="dim")


class RichStreamPrinter:
    """
    Displays a unified event stream live in a ``rich`` panel.

    Attributes:
        title: Title for the display panel
        show_metadata: Whether to show usage and tool calls at the end
        code_theme: Theme for code blocks
        inline_code_theme: Theme for inline code
        refresh_rate: Refresh rate for the Live display
        label: Provider label shown in the title (e.g. ``provider.label``)
    """

    def __init__(
        self,
        title: str = "Streaming Response",
        show_metadata: bool = True,
        code_theme: str = "coffee",
        inline_code_theme: str = "monokai",
        refresh_rate: int = 30,
        label: Optional[str] = None,
        border_style: str = "blue",
        console: Optional[Console] = None,
    ):
        self.title = title
        self.show_metadata = show_metadata
        self.code_theme = code_theme
        self.inline_code_theme = inline_code_theme
        self.refresh_rate = refresh_rate
        self.label = label
        self.border_style = border_style
        self.console = console or Console()
        self._full_text = ""
        self._active_tools: Dict[str, str] = {}
        self._response: Optional[ProviderResponse] = None

    async def print_stream(self, events: AsyncIterator[StreamEvent]) -> ProviderResponse:
        """
        Render ``events`` as they arrive.

        Args:
            events: Stream from ``BaseLLMProvider.stream_text``.

        Returns:
            ProviderResponse: The folded response, as ``generate_text`` would return it.
        """
        self._full_text = ""
        self._active_tools = {}
        self._response = None

        with Live(Panel("", border_style=self.border_style), refresh_per_second=self.refresh_rate,
                  console=self.console) as live:
            self._response = await collect_stream(self._watch(events, live))
            self._update_display(live, is_final=True)
        return self._response

    async def _watch(self, events: AsyncIterator[StreamEvent], live: Live) -> AsyncIterator[StreamEvent]:
        async for event in events:
            if isinstance(event, TextDelta):
                self._full_text += event.text
            elif isinstance(event, ToolCallStart):
                self._active_tools[event.id] = event.name
            elif isinstance(event, ToolCallEnd):
                self._active_tools.pop(event.id, None)
            if not isinstance(event, Done):
                self._update_display(live, is_final=False)
            yield event

    def _update_display(self, live: Live, is_final: bool) -> None:
        live.update(
            Panel(
                self._build_content(is_final),
                title=self._build_title(is_final),
                border_style="green" if is_final else self.border_style,
                padding=(1, 2),
            )
        )

    def _build_title(self, is_final: bool) -> str:
        title = "[bold]Final Response[/bold]" if is_final else f"[bold]{self.title}[/bold]"
        if self.label:
            title += f" [dim]({self.label})[/dim]"
        return title

    def _build_content(self, is_final: bool) -> Any:
        parts = []
        if self._full_text.strip():
            parts.append(Markdown(self._full_text, code_theme=self.code_theme,
                                  inline_code_theme=self.inline_code_theme))
        for name in self._active_tools.values():
            parts.append(Text(f"calling {name}...", style="yellow"))
        if is_final and self.show_metadata and self._response is not None:
            parts.append(_metadata_panel(response_metadata(self._response, self.label)))
        if not parts:
            return Text("(waiting for response...)", style="dim italic")
        return Group(*parts)

    def get_full_text(self) -> str:
        return self._full_text

    def get_response(self) -> Optional[ProviderResponse]:
        return self._response


class RichPrinter:
    """Prints a complete ``ProviderResponse`` in a single panel."""

    def __init__(
        self,
        title: str = "Response",
        show_metadata: bool = True,
        code_theme: str = "coffee",
        inline_code_theme: str = "monokai",
        border_style: str = "green",
        console: Optional[Console] = None,
    ):
        self.title = title
        self.show_metadata = show_metadata
        self.code_theme = code_theme
        self.inline_code_theme = inline_code_theme
        self.border_style = border_style
        self.console = console or Console()

    def print_response(self, response: ProviderResponse, label: Optional[str] = None) -> ProviderResponse:
        """Display ``response`` and return it unchanged for chaining."""
        title = f"[bold]{self.title}[/bold]"
        if label:
            title += f" [dim]({label})[/dim]"

        if response.text.strip():
            body: Any = Markdown(response.text, code_theme=self.code_theme,
                                 inline_code_theme=self.inline_code_theme)
        else:
            body = Text("(empty response)", style="dim italic")
        if self.show_metadata:
            body = Group(body, _metadata_panel(response_metadata(response, label)))

        self.console.print(Panel(body, title=title, border_style=self.border_style, padding=(1, 2)))
        return response
