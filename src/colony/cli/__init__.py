"""
Colony CLI - Command line access to model endpoints.

Lists the models an endpoint offers and runs single-entity conversations
against any of the supported wire dialects.

Usage:
    colony --help
    colony models http://localhost:1234/api/v1/chat
    colony ask http://localhost:1234/api/v1/chat --model qwen3-8b "Hello"
"""

import logging

import click
from dotenv import load_dotenv

from .commands import ask, models


@click.group()
@click.version_option(package_name="colony")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool):
    """Colony - multi-entity LLM conversation runtime CLI.

    API keys are read from the environment (ANTHROPIC_API_KEY,
    OPENAI_API_KEY) and from a .env file in the working directory.
    """
    load_dotenv()
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# Register commands
main.add_command(models)
main.add_command(ask)


if __name__ == "__main__":
    main()
