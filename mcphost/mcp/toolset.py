"""Toolset builders.

Turns an MCPConfig into what a transport needs: the command line for
stdio providers, the environment with resolved credentials, and HTTP
headers for remote providers.
"""

from dataclasses import dataclass, field
from pathlib import Path

import structlog

from mcphost.models.mcp import AuthType, MCPConfig, PackageArgType, PackageType, TransportType
from mcphost.services.secrets_service import SecretsError, SecretsManager

logger = structlog.get_logger()

DEFAULT_KEY_VAR = "API_KEY"

# Env var names matching any of these are sent as a bearer token
_TOKEN_MARKERS = ("token", "key")


class MCPConfigError(Exception):
    """Provider configuration cannot be turned into a runnable toolset."""

    pass


@dataclass
class ToolsetSpec:
    """Everything needed to open a transport for one provider."""

    transport: TransportType
    command: str = ""
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    url: str | None = None


def build_command(config: MCPConfig) -> tuple[str, list[str]]:
    """Build command and arguments for a provider based on its package type.

    npm packages run through ``npx -y`` (or the package's runtime hint),
    docker images through ``docker run -i --rm`` with each declared env var
    forwarded. HTTP packages have no command.

    Package arguments follow the package: a named argument emits
    ``--<name>`` followed by each comma-separated value, a positional one
    emits the values alone. Missing values fall back to the declared
    default; arguments with neither are skipped.

    Args:
        config: Provider configuration

    Returns:
        Tuple of (executable, args). Executable is empty for HTTP packages.
    """
    package = config.package

    if package.package_type is PackageType.NPM:
        command = package.runtime_hint or "npx"
        args = ["-y", package.identifier] if command == "npx" else [package.identifier]
    elif package.package_type is PackageType.DOCKER:
        command = package.runtime_hint or "docker"
        args = ["run", "-i", "--rm"]
        for var in config.env_vars:
            args.extend(["-e", var.name])
        args.append(package.identifier)
    else:
        return "", []

    for arg in config.package_args:
        value = config.package_arg_value(arg.name)
        if value is None or not value.strip():
            value = arg.default
        if value is None:
            continue

        entries = [v.strip() for v in value.split(",") if v.strip()]
        if not entries:
            continue
        if arg.arg_type is PackageArgType.NAMED:
            args.append(f"--{arg.name}")
        args.extend(entries)

    return command, args


def validate_package_args(config: MCPConfig) -> str | None:
    """Find the first required package argument without a usable value.

    Returns:
        Name of the missing argument, or None if all are satisfied
    """
    for arg in config.package_args:
        if not arg.required:
            continue
        value = config.package_arg_value(arg.name)
        if value is not None and value.strip():
            continue
        if arg.default is not None and arg.default.strip():
            continue
        return arg.name
    return None


def build_env_for_config(config: MCPConfig, secrets: SecretsManager) -> dict[str, str]:
    """Build environment variables holding a provider's credentials.

    Each declared variable is resolved from the variable's own stored
    secret, then the provider's default secret, then the keyfile.

    Args:
        config: Provider configuration
        secrets: Secrets store

    Returns:
        Environment mapping (values are secrets; never log them)

    Raises:
        MCPConfigError: If a required variable cannot be resolved
    """
    env: dict[str, str] = {}
    keyfile_value: str | None = None

    if config.keyfile_path is not None:
        try:
            keyfile_value = secrets.read_keyfile(config.keyfile_path)
        except SecretsError as e:
            if config.auth_type is AuthType.KEYFILE:
                raise MCPConfigError(str(e)) from e
            logger.warning("mcp_keyfile_unreadable", mcp_id=str(config.id), error=str(e))

    default_value = _get_secret(secrets, secrets.api_key_name(config.id))

    for var in config.env_vars:
        value = _get_secret(secrets, secrets.api_key_name(config.id, var.name))
        if value is None:
            value = default_value
        if value is None:
            value = keyfile_value
        if value is None:
            if var.required:
                raise MCPConfigError(
                    f"Missing required environment variable: {var.name}"
                )
            continue
        env[var.name] = value

    if not config.env_vars and config.auth_type is AuthType.KEYFILE and keyfile_value:
        env[DEFAULT_KEY_VAR] = keyfile_value

    logger.debug(
        "mcp_env_built",
        mcp_id=str(config.id),
        variables=sorted(env),
    )
    return env


def _get_secret(secrets: SecretsManager, key: str) -> str | None:
    try:
        value = secrets.get(key)
    except SecretsError as e:
        raise MCPConfigError(f"Failed to load secret: {e}") from e
    return value.strip() if value is not None else None


def is_token_like(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in _TOKEN_MARKERS)


def build_headers_for_config(
    config: MCPConfig,
    env: dict[str, str] | None = None,
) -> dict[str, str]:
    """Build HTTP headers for a remote provider.

    Priority for the Authorization header: the OAuth token, then the
    keyfile, then the first token-like environment variable. Other
    environment variables are passed as ``X-<NAME>`` headers.

    Args:
        config: Provider configuration
        env: Resolved environment, as returned by build_env_for_config

    Returns:
        Header mapping (may be empty)
    """
    headers: dict[str, str] = {}

    if config.oauth_token:
        headers["Authorization"] = f"Bearer {config.oauth_token}"
    elif config.keyfile_path is not None:
        token = _read_keyfile_quietly(config.keyfile_path)
        if token:
            headers["Authorization"] = f"Bearer {token}"

    for name, value in (env or {}).items():
        if is_token_like(name):
            headers.setdefault("Authorization", f"Bearer {value}")
        else:
            headers[f"X-{name}"] = value

    return headers


def _read_keyfile_quietly(path: Path) -> str | None:
    try:
        return Path(path).expanduser().read_text(encoding="utf-8").strip()
    except OSError:
        logger.warning("mcp_keyfile_unreadable", path=str(path))
        return None


def create_toolset_from_config(config: MCPConfig, secrets: SecretsManager) -> ToolsetSpec:
    """Validate a provider configuration and resolve everything needed to connect.

    Raises:
        MCPConfigError: If credentials are missing or a stdio provider has no command
    """
    env = build_env_for_config(config, secrets)

    if config.transport is TransportType.HTTP:
        return ToolsetSpec(
            transport=config.transport,
            env=env,
            headers=build_headers_for_config(config, env),
            url=config.package.identifier,
        )

    command, args = build_command(config)
    if not command:
        raise MCPConfigError("Stdio transport requires a command")

    return ToolsetSpec(
        transport=config.transport,
        command=command,
        args=args,
        env=env,
    )
