"""teamstream init — scaffold a teamstream.yaml in the current directory."""

from __future__ import annotations

from pathlib import Path

import click

from teamstream.config.parser import DEFAULT_CONFIG_NAME

ENV_EXAMPLE_FILENAME = ".env.example"

TEMPLATE_YAML = """\
# teamstream configuration
version: "1"

# Default model passed to the agent CLI (omit to use the CLI's default)
# model: sonnet

agent:
  # Path to the agent CLI; auto-discovered when unset
  # binary: ~/.local/bin/claude
  # bypassPermissions skips every prompt; default / acceptEdits / plan
  # forward permission prompts to the client
  permission_mode: bypassPermissions
  # Env var whose value is passed to the CLI as ANTHROPIC_API_KEY
  # api_key_env: TEAMSTREAM_API_KEY
  # base_url: https://api.anthropic.com
  node_heap_limit_mb: 2048

timeouts:
  check_interval: 5      # seconds between stall checks
  idle_timeout: 60       # interrupt after this long without output
  post_result_grace: 5   # interrupt if still running this long after the result
  close_grace: 5         # force-kill this long after an interrupt

team:
  enabled: false         # team mode: resume while teammates still have work
  # claude_home: ~/.claude

resume:
  poll_interval: 5
  max_cycles: 30

store:
  path: .teamstream/sessions
"""

TEMPLATE_ENV_EXAMPLE = """\
# Credentials for the agent CLI.
# Copy this file to .env and fill in the key named by `agent.api_key_env`
# in teamstream.yaml.  Leave it empty to use the CLI's own login.

TEAMSTREAM_API_KEY=
"""


@click.command()
@click.option(
    "--force",
    is_flag=True,
    help=f"Overwrite existing {DEFAULT_CONFIG_NAME} if it exists.",
)
def init(force: bool) -> None:
    """Scaffold a teamstream configuration in the current directory."""
    cwd = Path.cwd()
    config_path = cwd / DEFAULT_CONFIG_NAME
    env_example_path = cwd / ENV_EXAMPLE_FILENAME

    if config_path.exists() and not force:
        raise click.ClickException(
            f"{DEFAULT_CONFIG_NAME} already exists. Use --force to overwrite."
        )

    try:
        config_path.write_text(TEMPLATE_YAML, encoding="utf-8")
    except OSError as exc:
        raise click.ClickException(f"Cannot write {DEFAULT_CONFIG_NAME}: {exc}") from exc
    click.echo(f"  Created {DEFAULT_CONFIG_NAME}")

    if not env_example_path.exists() or force:
        try:
            env_example_path.write_text(TEMPLATE_ENV_EXAMPLE, encoding="utf-8")
        except OSError as exc:
            raise click.ClickException(
                f"Cannot write {ENV_EXAMPLE_FILENAME}: {exc}"
            ) from exc
        click.echo(f"  Created {ENV_EXAMPLE_FILENAME}")
    else:
        click.echo(f"  Skipped {ENV_EXAMPLE_FILENAME} (already exists)")

    click.echo()
    click.echo("Next steps:")
    click.echo(f"  1. Edit {DEFAULT_CONFIG_NAME} (permission mode, team mode, timeouts)")
    click.echo('  2. Run `teamstream run "your instruction"` to start a session')
