"""Command-line interface and configuration."""

import functools
from pathlib import Path
from typing import Any, Callable, Optional, Union

import click
import orjson as json
import uvloop
import yaml

import buscall

from . import log
from .tools import client

__all__ = [
    'check_positive',
    'cli',
    'load_yaml',
    'make_converter',
]


ParameterCallback = Callable[[click.Context, click.Parameter, Any], Any]


@functools.lru_cache(maxsize=64)
def make_converter(convert: Callable[[Any], Any]) -> ParameterCallback:
    """Make a :mod:`click` callback that applies a conversion to each option value.

    Works with options provided multiple times (where ``multiple=True``). ``None``
    passes through unconverted so that optional options stay optional.

    Arguments:
        convert: A unary conversion callable. The argument/return types are arbitrary
            and need not be the same.

    Returns:
        A :mod:`click`-compatible callback.

    Examples:
        >>> convert = make_converter(int)
        >>> convert(None, None, ('1', '2'))
        (1, 2)
        >>> convert(None, None, None) is None
        True
        >>> convert(None, None, 'x')
        Traceback (most recent call last):
          ...
        click.exceptions.BadParameter: invalid literal for int() with base 10: 'x'
    """

    def callback(_ctx: click.Context, _param: click.Parameter, value: Any, /) -> Any:
        if value is None:
            return None
        try:
            if isinstance(value, (tuple, list)):
                return tuple(convert(element) for element in value)
            return convert(value)
        except Exception as exc:
            raise click.BadParameter(str(exc)) from exc

    return callback


def check_positive(value: float) -> float:
    """Check whether the provided value is strictly positive.

    Examples:
        >>> check_positive(0.01)
        0.01
        >>> check_positive(0)
        Traceback (most recent call last):
          ...
        ValueError: '0' should be a positive number
        >>> check_positive(-0.01)
        Traceback (most recent call last):
          ...
        ValueError: '-0.01' should be a positive number
    """
    if value <= 0:
        raise ValueError(f"'{value}' should be a positive number")
    return value


def parse_arguments(value: str) -> list[Any]:
    """Parse positional method arguments given as a JSON array.

    Examples:
        >>> parse_arguments('["hello", 1, [true]]')
        ['hello', 1, [True]]
        >>> parse_arguments('{"a": 1}')
        Traceback (most recent call last):
          ...
        ValueError: arguments must be a JSON array
    """
    arguments = json.loads(value)
    if not isinstance(arguments, list):
        raise ValueError('arguments must be a JSON array')
    return arguments


def load_yaml(path: Union[str, Path]) -> Any:
    """Read and parse a YAML file.

    Arguments:
        path: A path to a valid regular text file.

    Examples:
        >>> import tempfile
        >>> with tempfile.NamedTemporaryFile(mode='w') as tmp:
        ...     print('bus_address: udp://localhost:7000', file=tmp)
        ...     _ = tmp.seek(0)
        ...     load_yaml(tmp.name)
        {'bus_address': 'udp://localhost:7000'}
        >>> with tempfile.NamedTemporaryFile(mode='w') as tmp:
        ...     print(':', file=tmp)
        ...     _ = tmp.seek(0)
        ...     load_yaml(tmp.name)
        Traceback (most recent call last):
          ...
        ValueError: Unable to parse YAML (...): line 1, column 1
    """
    try:
        with Path(path).open() as stream:
            return yaml.load(stream, Loader=yaml.SafeLoader)
    except yaml.YAMLError as exc:
        message = f'Unable to parse YAML ({path})'
        mark = getattr(exc, 'problem_mark', None)
        if mark:  # pragma: no cover
            # The PyYAML docs recommend this pattern:
            # https://pyyaml.org/wiki/PyYAMLDocumentation
            message += f': line {mark.line + 1}, column {mark.column + 1}'
        raise ValueError(message) from exc


def load_config(ctx: click.Context, _param: click.Parameter, value: Optional[str]) -> None:
    """Use the contents of a YAML file as option defaults.

    Top-level keys are option names of the main command (with underscores). Nested
    mappings under a command name provide that command's defaults.
    """
    if not value:
        return
    try:
        config = load_yaml(value)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc
    if config is None:
        return
    if not isinstance(config, dict):
        raise click.BadParameter('configuration must be a mapping')
    ctx.default_map = (ctx.default_map or {}) | config


@click.group(
    context_settings=dict(
        auto_envvar_prefix='BUSCALL',
        max_content_width=100,
        show_default=True,
    ),
)
@click.option(
    '--config',
    type=click.Path(dir_okay=False, exists=True),
    callback=load_config,
    is_eager=True,
    expose_value=False,
    help='YAML file providing option defaults.',
)
@click.option(
    '--bus-address',
    metavar='ADDRESS',
    default='udp://localhost:7000',
    help='Bus address (udp://HOST:PORT or a ZMQ endpoint like tcp://HOST:PORT).',
)
@click.option(
    '--bus-identity',
    metavar='IDENTITY',
    default='bus',
    help='Identity of the routing peer. Only used for ZMQ endpoints.',
)
@click.option(
    '--send-timeout',
    callback=make_converter(check_positive),
    type=float,
    default=1,
    help='Seconds to wait for a ZMQ send to complete before reopening the socket.',
)
@click.option(
    '--log-level',
    type=click.Choice(log.LEVELS, case_sensitive=False),
    default='info',
    help='Minimum severity of log records displayed.',
)
@click.option(
    '--log-format',
    type=click.Choice(['json', 'pretty'], case_sensitive=False),
    default='json',
    help='Format of records printed to standard output.',
)
@click.option('--debug/--no-debug', help='Enable the event loop debugger.')
@click.version_option(version=buscall.__version__, message='%(version)s')
@click.pass_context
def cli(ctx: click.Context, **options: Any) -> None:
    """Message bus client.

    Issues method calls on objects exported by peers on a message bus and reports the
    replies.
    """
    ctx.ensure_object(dict)
    ctx.obj.update(options)
    log.configure(fmt=options['log_format'], level=options['log_level'])


@cli.command(name='call')
@click.option(
    '--arguments',
    callback=make_converter(parse_arguments),
    default='[]',
    help='Positional arguments (in JSON format).',
)
@click.option('--no-reply', is_flag=True, help='Do not expect (or wait for) a reply.')
@click.option(
    '--no-auto-start',
    is_flag=True,
    help='Ask the bus not to launch the destination if it is not running.',
)
@click.option(
    '--timeout',
    callback=make_converter(check_positive),
    type=float,
    default=None,
    help='Seconds to wait for a reply. Waits indefinitely if not provided.',
)
@click.argument('destination')
@click.argument('path')
@click.argument('method')
@click.pass_context
def call_cli(ctx: click.Context, **options: Any) -> None:
    """Call METHOD on the object at PATH owned by DESTINATION.

    METHOD may be prefixed by an interface name, like in the following example:

    \b
        $ python -m buscall call org.freedesktop.DBus /org/freedesktop/DBus \\
            org.freedesktop.DBus.GetNameOwner --arguments '["org.example"]'
    """
    ctx.obj.update(options)
    if not uvloop.run(client.main(ctx.obj), debug=ctx.obj['debug']):
        ctx.exit(1)
