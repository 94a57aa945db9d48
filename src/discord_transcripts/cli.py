import asyncio
import json
import os
from pathlib import Path

import click
import yaml

from .directory import RestDirectory, StaticDirectory, resolve
from .runtime import (
    reset_refresh_cache,
    reset_verbose_logging,
    set_refresh_cache,
    set_verbose_logging,
)
from .settings import build_settings, parse_ttl
from .transcript import Transcript, build_transcript

SETTING_KEYS = (
    "components_version",
    "resolve_jobs",
    "reply_max_chars",
    "thread_preview_max_chars",
    "large_emoji_limit",
    "use_cache",
    "cache_ttl",
)


def config_path() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME") or os.path.expanduser("~/.config")
    return Path(base) / "discord-transcripts" / "config.yaml"


def load_config(path: Path | None = None) -> dict:
    path = path or config_path()
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except (OSError, yaml.YAMLError) as e:
        raise click.ClickException(f"Invalid config file {path}: {e}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise click.ClickException(f"Config file {path} must be a mapping")
    return data


def _read_structured(path: str) -> object:
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise click.ClickException(f"Cannot read {path}: {e}")
    try:
        if path.endswith((".yaml", ".yml")):
            return yaml.safe_load(raw)
        return json.loads(raw)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise click.ClickException(f"Invalid input in {path}: {e}")


def load_export(path: str) -> dict:
    """Normalize an export file into ``{"messages": [...], ...}``."""
    data = _read_structured(path)
    if isinstance(data, list):
        return {"messages": data}
    if isinstance(data, dict) and isinstance(data.get("messages"), list):
        return data
    raise click.ClickException(
        f"{path} must hold a list of messages or a mapping with a 'messages' list"
    )


class _LiteralDumper(yaml.SafeDumper):
    pass


def _repr_str(dumper, value):
    if "\n" in value:
        return dumper.represent_scalar("tag:yaml.org,2002:str", value, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", value)


_LiteralDumper.add_representer(str, _repr_str)


def render_output(transcript: Transcript, fmt: str) -> str:
    data = transcript.to_dict()
    if fmt == "yaml":
        return yaml.dump(
            data,
            sort_keys=False,
            default_flow_style=False,
            allow_unicode=True,
            Dumper=_LiteralDumper,
        )
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


async def _render_static(export: dict, entities: dict | None, guild_id, settings):
    payload = {
        key: export.get(key) for key in ("users", "members", "roles", "channels")
    }
    for key, value in (entities or {}).items():
        if value:
            payload[key] = value
    directory = StaticDirectory.from_mapping(payload)
    return await build_transcript(
        export["messages"],
        directory,
        guild_id=guild_id,
        guild_roles=payload.get("roles"),
        settings=settings,
    )


async def _render_rest(export: dict, guild_id, settings):
    async with RestDirectory(
        use_cache=settings.use_cache, cache_ttl=settings.cache_ttl
    ) as directory:
        directory.remember_messages(export["messages"], guild_id=guild_id)
        guild_roles = export.get("roles")
        if guild_id and not guild_roles:
            roles = await resolve(lambda: directory.guild_roles(guild_id))
            if roles.ok:
                guild_roles = roles.value
            else:
                click.echo(f"Could not fetch guild roles: {roles.reason}", err=True)
        return await build_transcript(
            export["messages"],
            directory,
            guild_id=guild_id,
            guild_roles=guild_roles,
            settings=settings,
        )


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
def cli():
    """
    Discord transcripts CLI - render exported messages into transcript trees
    """


@cli.command("render")
@click.argument("input_path", metavar="INPUT", type=click.Path(dir_okay=False))
@click.option(
    "-f",
    "--format",
    "fmt",
    type=click.Choice(["json", "yaml"], case_sensitive=False),
    default="json",
    show_default=True,
    help="Output format",
)
@click.option("--guild-id", default=None, help="Guild the messages belong to")
@click.option(
    "--entities",
    "entities_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="JSON/YAML file with users, members, roles and channels for lookups",
)
@click.option("--rest", is_flag=True, help="Resolve entities through the Discord REST API")
@click.option("--no-cache", is_flag=True, help="Disable the on-disk API cache")
@click.option("--refresh-cache", is_flag=True, help="Ignore cached API responses")
@click.option(
    "-o",
    "--output",
    type=click.Path(dir_okay=False),
    default=None,
    help="Write output to a file instead of stdout",
)
@click.option("-v", "--verbose", is_flag=True, help="Log resolution progress to stderr")
def render_cmd(
    input_path,
    fmt,
    guild_id,
    entities_path,
    rest,
    no_cache,
    refresh_cache,
    output,
    verbose,
):
    """Render an exported message list to a transcript."""
    if rest and entities_path:
        raise click.BadParameter("use --rest or --entities, not both")

    config = load_config()
    overrides = {key: config[key] for key in SETTING_KEYS if key in config}
    if "cache_ttl" in overrides:
        overrides["cache_ttl"] = parse_ttl(overrides["cache_ttl"])
    if no_cache:
        overrides["use_cache"] = False
    settings = build_settings(overrides)

    export = load_export(input_path)
    entities = None
    if entities_path:
        entities = _read_structured(entities_path)
        if not isinstance(entities, dict):
            raise click.ClickException(f"{entities_path} must be a mapping")
    guild_id = guild_id or export.get("guild_id") or config.get("guild_id")
    guild_id = str(guild_id) if guild_id else None

    verbose_token = set_verbose_logging(verbose or bool(config.get("verbose")))
    refresh_token = set_refresh_cache(refresh_cache)
    try:
        if rest or (config.get("rest") and not entities_path):
            try:
                transcript = asyncio.run(_render_rest(export, guild_id, settings))
            except ValueError as e:
                raise click.ClickException(str(e))
        else:
            transcript = asyncio.run(
                _render_static(export, entities, guild_id, settings)
            )
    finally:
        reset_refresh_cache(refresh_token)
        reset_verbose_logging(verbose_token)

    text = render_output(transcript, fmt.lower())
    if output:
        Path(output).write_text(text, encoding="utf-8")
        click.echo(f"Wrote {len(transcript.messages)} message(s) to {output}", err=True)
    else:
        click.echo(text, nl=False)


def main():
    cli()


if __name__ == "__main__":
    main()
