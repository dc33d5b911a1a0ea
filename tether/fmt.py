"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.rule import Rule
from rich.text import Text

from .events import (
    CallFinished,
    CallStarted,
    DoomLoopDetected,
    ProtocolErrorReported,
    StepLimitReached,
    StepStarted,
    TurnDone,
)
from .types import PermissionRequest

_console = Console(stderr=True)

PREVIEW_CHARS = 120


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Step structure ----------------------------------------------------------


def step_header(n: int, max_n: int, token_est: int) -> None:
    title = f"Step {n}/{max_n} (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def completion(steps: int, state: str, reason: str | None = None) -> None:
    if state == "done":
        _console.print(
            Text(f"  ✓ Agent finished: {steps} steps", style="bold green")
        )
    else:
        suffix = f" ({reason})" if reason else ""
        _console.print(
            Text(f"  Agent stopped: {steps} steps, {state}{suffix}", style="bold red")
        )


def step_limit(max_steps: int) -> None:
    line = Text()
    line.append("  ⚠ Step limit: ", style="bold yellow")
    line.append(f"stopped after {max_steps} tool rounds", style="yellow")
    _console.print(line)


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def protocol_error(call_id: str, msg: str) -> None:
    line = Text()
    line.append(f"  ✗ stream [{call_id}] ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


# -- Permissions -------------------------------------------------------------


def permission_request(request: PermissionRequest) -> None:
    line = Text()
    line.append("  ? Permission: ", style="bold yellow")
    line.append(request.description, style="yellow")
    _console.print(line)


def doom_loop(tool_name: str, repeats: int) -> None:
    line = Text()
    line.append("  ⚠ Doom loop: ", style="bold yellow")
    line.append(
        f"{tool_name} called {repeats} times with identical arguments",
        style="yellow",
    )
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner() -> None:
    _console.print(
        Text("Interactive mode. Type /exit or Ctrl-D to quit, /help for commands.", style="dim")
    )


def _preview(output: str) -> str:
    first = output.strip().splitlines()[0] if output.strip() else ""
    if len(first) > PREVIEW_CHARS:
        first = first[:PREVIEW_CHARS] + "..."
    return first


def listener(event: object) -> None:
    """Render lifecycle events; subscribe to an EventEmitter for verbose runs.

    Permission requests are left to the surface that answers them.
    """
    if isinstance(event, StepStarted):
        step_header(event.step, event.max_steps, event.token_estimate)
    elif isinstance(event, CallStarted):
        tool_call(event.call.name, event.call.arguments)
    elif isinstance(event, CallFinished):
        if event.result.is_error:
            tool_error(event.call.name, _preview(event.result.output))
        else:
            tool_result(event.call.name, event.elapsed, _preview(event.result.output))
    elif isinstance(event, DoomLoopDetected):
        doom_loop(event.call.name, event.repeats)
    elif isinstance(event, ProtocolErrorReported):
        protocol_error(event.call_id, event.message)
    elif isinstance(event, StepLimitReached):
        step_limit(event.max_steps)
    elif isinstance(event, TurnDone):
        completion(event.steps, event.state, event.reason)
