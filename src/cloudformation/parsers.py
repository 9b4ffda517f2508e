"""
Parsing of tag and parameter documents (YAML or JSON) into the shapes the
CloudFormation API expects.
"""

import logging
import os
from typing import Any, Dict, Iterable, Iterator, List

import yaml
from jinja2 import Environment, StrictUndefined, TemplateError
from jinja2.ext import Extension
from jinja2.lexer import Token, TokenStream

from .errors import ForgeError, InvalidFormat, MissingEnvVar
from .values import value_to_string

logger = logging.getLogger(__name__)

TIMESTAMP_TAG = "tag:yaml.org,2002:timestamp"


class DocumentLoader(yaml.SafeLoader):
    """SafeLoader that keeps timestamp-like scalars (``2020-01-01``) as strings."""


DocumentLoader.yaml_implicit_resolvers = {
    first_char: [(tag, regexp) for tag, regexp in resolvers if tag != TIMESTAMP_TAG]
    for first_char, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


def _lookup_env(name: str) -> str:
    if name in os.environ:
        return os.environ[name]
    raise MissingEnvVar(name)


class EnvCallExtension(Extension):
    """
    Allow ``{{ env "NAME" }}``: a string directly after ``env`` at the start
    of an expression is rewritten into the call ``env("NAME")``.
    """

    def filter_stream(self, stream: TokenStream) -> Iterator[Token]:
        previous = None
        after_env = False
        for token in stream:
            if after_env and token.type == "string":
                yield Token(token.lineno, "lparen", "(")
                yield token
                yield Token(token.lineno, "rparen", ")")
                after_env = False
                previous = token
                continue
            after_env = (
                token.type == "name"
                and token.value == "env"
                and previous is not None
                and previous.type == "variable_begin"
            )
            previous = token
            yield token


# Only {{ }} is special in values; block and comment delimiters are moved
# out of the way so "{%" and "{#" stay literal text.
_template_env = Environment(
    undefined=StrictUndefined,
    autoescape=False,
    keep_trailing_newline=True,
    block_start_string="\x00{%",
    block_end_string="%}\x00",
    comment_start_string="\x00{#",
    comment_end_string="#}\x00",
    extensions=[EnvCallExtension],
)
_template_env.globals = {"env": _lookup_env}


def parse_environment_variables(value: str) -> str:
    """Expand ``{{ env "NAME" }}`` references in a value.

    The call form ``{{ env("NAME") }}`` is accepted too. Expansion happens
    once; the result is not expanded again.

    Raises:
        MissingEnvVar: A referenced variable is not set
        InvalidFormat: The value is not a valid template
    """
    try:
        return _template_env.from_string(value).render()
    except TemplateError as e:
        raise InvalidFormat(f"Invalid template expression in {value!r}: {e}") from e


def _load_flat_mapping(body: str, kind: str) -> Dict[Any, Any]:
    """Decode a YAML/JSON document that must be a flat key-value object."""
    try:
        parsed = yaml.load(body, Loader=DocumentLoader)
    except yaml.YAMLError as e:
        raise InvalidFormat(f"{kind} document could not be parsed: {e}") from e

    if not isinstance(parsed, dict):
        raise InvalidFormat(f"{kind} must be a basic key-value object")
    return parsed


def _convert(kind: str, key: str, value: Any, allow_slices: bool) -> str:
    if isinstance(value, dict):
        raise InvalidFormat(f"Invalid {kind} {key}: nested objects are not allowed")
    try:
        converted = value_to_string(value, allow_slices=allow_slices, allow_commas=True)
    except ForgeError as e:
        raise type(e)(f"Invalid {kind} {key}: {e}") from e
    return parse_environment_variables(converted)


def parse_tags(body: str) -> List[Dict[str, str]]:
    """
    Parse a tags document.

    Args:
        body: YAML or JSON text holding a flat key-value object

    Returns:
        List of ``{"Key": ..., "Value": ...}`` in document order
    """
    parsed = _load_flat_mapping(body, "Tags")
    tags = []
    for key, value in parsed.items():
        key = str(key)
        tags.append({"Key": key, "Value": _convert("Tag", key, value, allow_slices=False)})
    return tags


def parse_parameters(bodies: Iterable[str]) -> List[Dict[str, str]]:
    """
    Parse and merge parameter documents.

    Documents are applied in order; a key defined again in a later document
    replaces the earlier value.

    Args:
        bodies: YAML or JSON documents, each a flat key-value object

    Returns:
        List of ``{"ParameterKey": ..., "ParameterValue": ...}``
    """
    merged: Dict[str, str] = {}
    for body in bodies:
        parsed = _load_flat_mapping(body, "Parameters")
        for key, value in parsed.items():
            key = str(key)
            merged[key] = _convert("Parameter", key, value, allow_slices=True)

    logger.debug(f"Parsed {len(merged)} parameters")
    return [{"ParameterKey": k, "ParameterValue": v} for k, v in merged.items()]


def parse_parameter_overrides(args: Iterable[str]) -> Dict[str, str]:
    """Parse ``KEY=VALUE`` override arguments; later duplicates win."""
    overrides: Dict[str, str] = {}
    for arg in args:
        key, sep, value = arg.partition("=")
        if not sep:
            raise InvalidFormat(
                f'Parameter override "{arg}" is invalid. Must be of the format "<key>=<value>"'
            )
        overrides[key] = value
    return overrides
