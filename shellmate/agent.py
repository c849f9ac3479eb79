import argparse
import concurrent.futures
import functools
import json
import logging
import os
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from importlib import metadata
from pathlib import Path

import tiktoken

from . import fmt
from .config import (
    PROVIDERS,
    _UNSET,
    apply_config_to_args,
    generate_config,
    load_config,
)
from .errors import (
    AgentError,
    BoundExceededError,
    CollaboratorError,
    ConfigError,
    TurnCanceledError,
    TurnError,
)
from .sandbox import DEFAULT_BLOCKLIST, Workspace, build_blocklist
from .store import ConversationStore, Turn
from .tools import DEFAULT_COMMAND_TIMEOUT, TOOLS, invoke_tool

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
MAX_ARG_LOG = 1000
POLL_INTERVAL = 0.1

CONTINUE_PROMPT = (
    "Your response was cut off. Please use the provided tools to complete "
    "the task step by step, or give your final answer."
)

# provider -> (default model, api key env vars)
PROVIDER_DEFAULTS: dict[str, tuple[str, tuple[str, ...]]] = {
    "gemini": ("gemini-2.5-flash", ("GEMINI_API_KEY", "GOOGLE_API_KEY")),
    "openai": ("gpt-4o", ("OPENAI_API_KEY",)),
    "ollama": ("gemma2:9b", ()),
}
DEFAULT_OLLAMA_URL = "http://localhost:11434"


@functools.cache
def _encoder():
    return tiktoken.get_encoding("cl100k_base")


def estimate_tokens(messages: list, tools: list | None = None) -> int:
    """Count tokens across all messages using tiktoken."""
    enc = _encoder()
    total = 0
    for m in messages:
        content = m.get("content") or ""
        for tc in m.get("tool_calls") or ():
            fn = tc.get("function", {})
            content += fn.get("name", "") + (fn.get("arguments", "") or "")
        total += len(enc.encode(content))
    if tools:
        total += len(enc.encode(json.dumps(tools)))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total


# ---------------------------------------------------------------------------
# Reasoning collaborator
# ---------------------------------------------------------------------------


def resolve_provider(
    provider: str,
    model: str | None = None,
    api_key: str | None = None,
    base_url: str | None = None,
) -> dict:
    """Work out the litellm settings for a provider, failing fast on missing keys.

    Returns keyword arguments for call_llm().

    Raises:
        ConfigError: For unknown providers or when no API key can be found.
    """
    if provider not in PROVIDER_DEFAULTS:
        raise ConfigError(
            f"unknown provider {provider!r} (expected one of {', '.join(PROVIDERS)})"
        )
    default_model, key_vars = PROVIDER_DEFAULTS[provider]

    if provider == "ollama":
        base_url = base_url or os.environ.get("OLLAMA_BASE_URL") or DEFAULT_OLLAMA_URL
        model = model or os.environ.get("OLLAMA_MODEL") or default_model
        return {
            "provider": provider,
            "model": model,
            "api_key": None,
            "base_url": base_url,
        }

    model = model or default_model
    if not api_key:
        api_key = next((os.environ[v] for v in key_vars if os.environ.get(v)), None)
    if not api_key:
        raise ConfigError(
            f"--api-key or one of {', '.join(key_vars)} is required for provider {provider}"
        )
    return {
        "provider": provider,
        "model": model,
        "api_key": api_key,
        "base_url": base_url,
    }


def call_llm(
    messages,
    tools,
    *,
    provider: str,
    model: str,
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float | None = 0.0,
):
    """Call LiteLLM with the appropriate provider. Returns (message, finish_reason)."""
    import litellm

    litellm.suppress_debug_info = True

    if provider == "gemini":
        model_str = f"gemini/{model.removeprefix('gemini/')}"
    elif provider == "openai":
        model_str = f"openai/{model.removeprefix('openai/')}"
    elif provider == "ollama":
        model_str = f"ollama_chat/{model.removeprefix('ollama_chat/')}"
    else:
        raise CollaboratorError(f"unknown provider {provider!r}")

    completion_kwargs = dict(
        model=model_str,
        messages=messages,
        tools=tools,
        tool_choice="auto",
    )
    if api_key:
        completion_kwargs["api_key"] = api_key
    if base_url:
        completion_kwargs["api_base"] = base_url
    if temperature is not None:
        completion_kwargs["temperature"] = temperature

    try:
        response = litellm.completion(**completion_kwargs)
    except Exception as e:
        raise CollaboratorError(f"LLM call failed: {e}") from e

    choice = response.choices[0]
    return choice.message, choice.finish_reason


# ---------------------------------------------------------------------------
# Turn executor
# ---------------------------------------------------------------------------


class TurnState(Enum):
    IDLE = "idle"
    REASONING = "reasoning"
    TOOL_PENDING = "tool_pending"
    FINALIZING = "finalizing"
    DONE = "done"
    CANCELED = "canceled"
    FAILED = "failed"


@dataclass
class TurnResult:
    """Outcome of run_turn(). ``answer`` is set only when state is DONE."""

    state: TurnState
    answer: str | None = None
    error: TurnError | None = None
    iterations: int = 0
    elapsed: float = 0.0


def build_system_prompt(workspace: Workspace, template: str | None = None) -> str:
    if template is None:
        template = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8")
    now = datetime.now().astimezone()
    return (
        f"{template.rstrip()}\n\n"
        f"Base directory: {workspace.base_dir}\n"
        f"Current date and time: {now.strftime('%Y-%m-%d %H:%M %Z')}"
    )


def build_messages(
    user_input: str,
    store: ConversationStore,
    workspace: Workspace,
    system_prompt: str | None = None,
) -> list[dict]:
    """System prompt, then prior turns, then the new input."""
    messages = [
        {"role": "system", "content": build_system_prompt(workspace, system_prompt)}
    ]
    messages.extend(store.to_messages())
    messages.append({"role": "user", "content": user_input})
    return messages


def _assistant_message(msg) -> dict:
    """Convert a model message (litellm object or stub) to a plain dict."""
    out: dict = {"role": "assistant", "content": getattr(msg, "content", None)}
    tool_calls = getattr(msg, "tool_calls", None)
    if tool_calls:
        out["tool_calls"] = [
            {
                "id": tc.id,
                "type": "function",
                "function": {
                    "name": tc.function.name,
                    "arguments": _raw_arguments(tc),
                },
            }
            for tc in tool_calls
        ]
    return out


def _raw_arguments(tool_call) -> str:
    args = tool_call.function.arguments
    if isinstance(args, str):
        return args
    return json.dumps(args)


def handle_tool_call(
    tool_call,
    workspace: Workspace,
    *,
    cancel_token=None,
    blocklist=DEFAULT_BLOCKLIST,
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
    verbose: bool = False,
) -> dict:
    """Execute a single tool call and return the tool message for the model.

    Tool failures come back as ``error: ...`` text. Only cancellation of
    a running shell command propagates (as TurnCanceledError).
    """
    name = tool_call.function.name
    raw_args = _raw_arguments(tool_call)

    if verbose:
        pretty = raw_args
        try:
            pretty = json.dumps(json.loads(raw_args), indent=2)
        except (json.JSONDecodeError, TypeError):
            pass
        if len(pretty) > MAX_ARG_LOG:
            pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
        fmt.tool_call(name, pretty)

    t0 = time.monotonic()
    try:
        result = invoke_tool(
            name,
            raw_args,
            workspace,
            cancel_token=cancel_token,
            blocklist=blocklist,
            command_timeout=command_timeout,
        )
    except TurnCanceledError:
        raise
    except Exception as e:
        logger.exception("tool %s raised", name)
        result = f"error: {e}"
    elapsed = time.monotonic() - t0

    if verbose:
        if result.startswith("error:"):
            fmt.tool_error(name, result)
        else:
            fmt.tool_result(name, elapsed, result[:500])

    return {"role": "tool", "tool_call_id": tool_call.id, "content": result}


def _checkpoint(cancel_token, deadline: float, limit: float) -> None:
    """Raise if the turn was cancelled or ran out of wall-clock time."""
    if cancel_token is not None and cancel_token.cancelled:
        raise TurnCanceledError("turn cancelled by user")
    if time.monotonic() >= deadline:
        raise BoundExceededError(f"turn exceeded the time limit of {limit:g}s")


def _wait_for(future, cancel_token, deadline: float, limit: float):
    """Wait for a future in short slices, honouring cancellation and deadline."""
    while True:
        _checkpoint(cancel_token, deadline, limit)
        remaining = deadline - time.monotonic()
        try:
            return future.result(timeout=max(0.0, min(POLL_INTERVAL, remaining)))
        except concurrent.futures.TimeoutError:
            continue


def run_turn(
    user_input: str,
    store: ConversationStore,
    workspace: Workspace,
    *,
    llm,
    max_iterations: int = 10,
    max_execution_time: float = 120.0,
    cancel_token=None,
    blocklist=DEFAULT_BLOCKLIST,
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
    system_prompt: str | None = None,
    verbose: bool = False,
) -> TurnResult:
    """Drive one turn: let the model call tools until it answers or a bound hits.

    ``llm(messages, tools)`` must return ``(message, finish_reason)`` where
    the message has ``content`` and ``tool_calls`` attributes. It runs on a
    worker thread so cancellation and the time limit are noticed while it is
    still pending.

    Tool results only live in this turn's scratch messages. The store gets
    exactly one Turn appended, and only when the turn reaches DONE.
    """
    t0 = time.monotonic()
    deadline = t0 + max_execution_time
    state = TurnState.IDLE
    iterations = 0
    messages = build_messages(user_input, store, workspace, system_prompt)
    pool = concurrent.futures.ThreadPoolExecutor(
        max_workers=1, thread_name_prefix="shellmate-llm"
    )

    def _result(state, answer=None, error=None):
        return TurnResult(
            state=state,
            answer=answer,
            error=error,
            iterations=iterations,
            elapsed=time.monotonic() - t0,
        )

    try:
        while True:
            state = TurnState.REASONING
            if verbose:
                fmt.iteration_header(
                    iterations + 1, max_iterations, estimate_tokens(messages, TOOLS)
                )

            llm_t0 = time.monotonic()
            future = pool.submit(llm, messages, TOOLS)
            try:
                msg, finish_reason = _wait_for(
                    future, cancel_token, deadline, max_execution_time
                )
            except TurnError:
                raise
            except Exception as e:
                raise CollaboratorError(f"LLM call failed: {e}") from e
            if verbose:
                fmt.llm_timing(time.monotonic() - llm_t0, finish_reason)
            _checkpoint(cancel_token, deadline, max_execution_time)

            messages.append(_assistant_message(msg))
            content = getattr(msg, "content", None)
            tool_calls = getattr(msg, "tool_calls", None) or []

            if content and (tool_calls or finish_reason == "length") and verbose:
                fmt.assistant_text(content)

            if not tool_calls and finish_reason != "length":
                answer = (content or "").strip()
                if not answer:
                    raise CollaboratorError("model returned an empty response")
                state = TurnState.FINALIZING
                store.append(Turn(human=user_input, assistant=answer))
                state = TurnState.DONE
                if verbose:
                    fmt.completion(iterations, state.value)
                return _result(state, answer=answer)

            if iterations >= max_iterations:
                raise BoundExceededError(
                    f"turn exceeded the limit of {max_iterations} iterations"
                )
            iterations += 1

            if not tool_calls:
                # Output was truncated before the model could finish
                if verbose:
                    fmt.info("Response truncated (finish_reason=length), prompting continuation.")
                messages.append({"role": "user", "content": CONTINUE_PROMPT})
                continue

            state = TurnState.TOOL_PENDING
            for tool_call in tool_calls:
                _checkpoint(cancel_token, deadline, max_execution_time)
                # A command may not outlive the turn
                remaining = deadline - time.monotonic()
                messages.append(
                    handle_tool_call(
                        tool_call,
                        workspace,
                        cancel_token=cancel_token,
                        blocklist=blocklist,
                        command_timeout=min(command_timeout, remaining),
                        verbose=verbose,
                    )
                )
            _checkpoint(cancel_token, deadline, max_execution_time)

    except TurnCanceledError as e:
        logger.info("turn cancelled in state %s", state.value)
        if verbose:
            fmt.completion(iterations, TurnState.CANCELED.value)
        return _result(TurnState.CANCELED, error=e)
    except (BoundExceededError, CollaboratorError) as e:
        logger.info("turn failed in state %s: %s", state.value, e)
        if verbose:
            fmt.completion(iterations, TurnState.FAILED.value)
        return _result(TurnState.FAILED, error=e)
    finally:
        pool.shutdown(wait=False, cancel_futures=True)


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="shellmate",
        usage="%(prog)s [options] [question]",
        description=(
            "An interactive CLI agent that reads and writes files and runs shell "
            "commands inside a sandboxed base directory."
        ),
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented configuration template and exit.",
    )
    parser.add_argument(
        "question",
        nargs="?",
        default=None,
        help="Optional first question; the interactive session starts afterwards.",
    )
    parser.add_argument(
        "--provider",
        choices=list(PROVIDERS),
        default=_UNSET,
        help="LLM provider: gemini (default), openai or ollama (local).",
    )
    parser.add_argument("--model", default=_UNSET, help="Model identifier override.")
    parser.add_argument(
        "--api-key",
        default=_UNSET,
        help="API key for the provider (overrides env var).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Server base URL (mostly for ollama, default: http://localhost:11434).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: 0).",
    )
    parser.add_argument(
        "--base-dir",
        default=".",
        help="Base directory for file tools and shell commands (default: current directory).",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=_UNSET,
        help="Maximum tool-calling iterations per turn (default: 10).",
    )
    parser.add_argument(
        "--max-execution-time",
        type=float,
        default=_UNSET,
        help="Maximum wall-clock seconds per turn (default: 120).",
    )
    parser.add_argument(
        "--command-timeout",
        type=float,
        default=_UNSET,
        help="Timeout in seconds for a single shell command (default: 30).",
    )
    parser.add_argument(
        "--strict-blocklist",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Also refuse mkdir and touch in shell commands.",
    )
    parser.add_argument(
        "--history-file",
        default=_UNSET,
        help="Command history file (default: ~/.shellmate_history).",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Suppress diagnostics; only print answers.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log internal debug messages to stderr.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("shellmate")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config())
        sys.exit(0)

    if args.debug:
        logging.basicConfig(
            level=logging.DEBUG,
            stream=sys.stderr,
            format="%(asctime)s %(name)s %(levelname)s: %(message)s",
        )

    try:
        apply_config_to_args(args, load_config(args.base_dir))
        fmt.init(color=args.color, no_color=args.no_color)
        _run_main(args)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)


def _run_main(args):
    from .repl import repl_loop

    if not Path(args.base_dir).is_dir():
        raise ConfigError(f"base directory is not a directory: {args.base_dir}")
    workspace = Workspace(args.base_dir)

    llm_kwargs = resolve_provider(
        args.provider, model=args.model, api_key=args.api_key, base_url=args.base_url
    )
    verbose = not args.quiet
    if verbose:
        fmt.model_info(f"Using {llm_kwargs['provider']} model {llm_kwargs['model']}")
    llm = functools.partial(call_llm, temperature=args.temperature, **llm_kwargs)

    turn_kwargs = dict(
        max_iterations=args.max_iterations,
        max_execution_time=args.max_execution_time,
        command_timeout=args.command_timeout,
        blocklist=build_blocklist(args.strict_blocklist, args.blocked_commands),
        verbose=verbose,
    )

    repl_loop(
        ConversationStore(),
        workspace,
        llm=llm,
        turn_kwargs=turn_kwargs,
        history_file=args.history_file,
        initial_question=args.question,
        verbose=verbose,
    )


if __name__ == "__main__":
    main()
