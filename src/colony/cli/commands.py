"""
Endpoint commands:
- models: List the chat models an endpoint's server offers
- ask: Send one prompt to a single entity and print its answer
"""

import asyncio
import sys
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from colony.agents.exceptions import ColonyError
from colony.agents.registry import Colony
from colony.coordination.config import ColonySettings
from colony.models.models import BaseAPIModel, ModelConfig
from colony.models.response_models import ErrorChunk, ReasoningChunk, TextChunk

console = Console()
err_console = Console(stderr=True)


def _fail(message: str) -> None:
    err_console.print(f"[bold red]Error:[/bold red] {message}")
    sys.exit(1)


@click.command()
@click.argument("endpoint")
@click.option("--api-key", envvar="COLONY_API_KEY", default=None, help="API key for remote endpoints")
def models(endpoint: str, api_key: Optional[str]):
    """List the chat models offered by ENDPOINT's server.

    \b
    Examples:
        colony models http://localhost:1234/api/v1/chat
        colony models https://api.openai.com/v1/chat/completions
    """

    async def _fetch():
        model = BaseAPIModel(ModelConfig(endpoint=endpoint, api_key=api_key))
        try:
            return await model.fetch_models()
        finally:
            await model.cleanup()

    try:
        available = asyncio.run(_fetch())
    except ColonyError as e:
        _fail(e.user_message)
        return

    if not available:
        console.print("No chat models found.")
        return

    table = Table(title=f"Models at {endpoint}")
    table.add_column("Model", style="cyan")
    table.add_column("State")
    table.add_column("Type")
    table.add_column("Quantization")
    table.add_column("Max context", justify="right")
    for info in available:
        table.add_row(
            info.id,
            info.state,
            info.type,
            info.quantization or "",
            str(info.max_context) if info.max_context else "",
        )
    console.print(table)


@click.command()
@click.argument("endpoint")
@click.argument("prompt")
@click.option("--model", "-m", "model_name", required=True, help="Model identifier")
@click.option("--name", default="entity", show_default=True, help="Entity name")
@click.option("--system", "system_prompt", default="", help="Entity system prompt")
@click.option("--api-key", envvar="COLONY_API_KEY", default=None, help="API key for remote endpoints")
@click.option(
    "--config", "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="YAML colony settings file"
)
@click.option("--stream/--no-stream", default=True, show_default=True, help="Stream the answer as it arrives")
@click.option("--show-reasoning", is_flag=True, help="Print the model's reasoning")
def ask(
    endpoint: str,
    prompt: str,
    model_name: str,
    name: str,
    system_prompt: str,
    api_key: Optional[str],
    config_path: Optional[str],
    stream: bool,
    show_reasoning: bool,
):
    """Send PROMPT to a single entity on ENDPOINT and print the answer.

    \b
    Examples:
        colony ask http://localhost:1234/api/v1/chat -m qwen3-8b "Hello"
        colony ask https://api.anthropic.com/v1/messages -m claude-sonnet-4-5 "Hi" --no-stream
    """
    try:
        settings = ColonySettings.from_yaml(config_path) if config_path else ColonySettings()
    except ColonyError as e:
        _fail(e.user_message)
        return
    settings.stream = stream

    streamed = {"text": False}

    def on_chunk(chunk):
        if isinstance(chunk, TextChunk):
            streamed["text"] = True
            console.print(chunk.delta, end="", markup=False, highlight=False)
        elif isinstance(chunk, ReasoningChunk) and show_reasoning:
            console.print(chunk.delta, end="", style="dim", markup=False, highlight=False)
        elif isinstance(chunk, ErrorChunk):
            err_console.print(f"[red]{chunk.message}[/red]")

    async def _run():
        async with Colony(settings=settings) as colony:
            colony.register(name, endpoint=endpoint, model=model_name, system_prompt=system_prompt, api_key=api_key)
            return await colony.send(name, prompt, on_chunk=on_chunk)

    try:
        outcome = asyncio.run(_run())
    except ColonyError as e:
        _fail(e.user_message)
        return

    if outcome is None or outcome.error:
        _fail(outcome.error if outcome else "Message was not processed")
        return

    if streamed["text"]:
        console.print()
        return

    if show_reasoning and outcome.reasoning:
        console.print(outcome.reasoning, style="dim", markup=False, highlight=False)
    console.print(outcome.text or "", markup=False, highlight=False)
