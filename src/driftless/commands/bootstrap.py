"""Bootstrap commands.

This module provides `driftless bootstrap git|github|gitlab`, which commit the
toolkit manifests to a Git repository, install them in the cluster and
configure the cluster to keep syncing from that repository.
"""

from __future__ import annotations

import functools
import sys
import tempfile
from pathlib import Path
from urllib.parse import urlsplit

import click
import questionary
from rich.console import Console

from ..bootstrap import (
    AuthMethod,
    BootstrapOptions,
    BootstrapOrchestrator,
    CredentialBundle,
    CredentialKind,
    GitCLIDriver,
    GitHubProvider,
    GitLabProvider,
    InstallOptions,
    KeyAlgorithm,
    KubernetesEnvironmentClient,
    Provider,
    ProviderOptions,
    SecretOptions,
    SyncOptions,
    auto_accept,
)
from ..bootstrap.credentials import decrypt_private_key, scan_host_keys
from ..bootstrap.options import (
    DEFAULT_BRANCH,
    DEFAULT_COMPONENTS,
    DEFAULT_REGISTRY,
    DEFAULT_VERSION,
    ECDSA_CURVES,
    EXTRA_COMPONENTS,
    LOG_LEVELS,
)
from ..bootstrap.orchestrator import ACTION, FAILURE, SUCCESS, WAITING
from ..errors import BootstrapError

console = Console(stderr=True)

_SYMBOLS = {
    ACTION: "[cyan]►[/cyan]",
    SUCCESS: "[green]✔[/green]",
    WAITING: "[yellow]◎[/yellow]",
    FAILURE: "[red]✗[/red]",
}


def print_event(kind: str, message: str) -> None:
    """Render one orchestrator progress event."""
    console.print(f"{_SYMBOLS.get(kind, ' ')} {message}", highlight=False)


def _split(values: tuple[str, ...]) -> list[str]:
    """Flatten repeated and comma separated option values."""
    return [item.strip() for value in values for item in value.split(",") if item.strip()]


def common_options(func):
    """Options shared by every bootstrap subcommand."""
    options = [
        click.option("--branch", default=DEFAULT_BRANCH, show_default=True, help="Git branch"),
        click.option("--path", "target_path", default="", help="Path relative to the repository root"),
        click.option("-v", "--version", "version", default=DEFAULT_VERSION, show_default=True,
                     help="Toolkit version"),
        click.option("--components", multiple=True, help="Components to install (comma separated)"),
        click.option("--components-extra", multiple=True,
                     help=f"Extra components: {', '.join(EXTRA_COMPONENTS)}"),
        click.option("--registry", default=DEFAULT_REGISTRY, show_default=True,
                     help="Container registry the images are pulled from"),
        click.option("--image-pull-secret", default="", help="Secret used to pull images"),
        click.option("--watch-all-namespaces/--watch-own-namespace", default=True,
                     help="Watch objects in all namespaces"),
        click.option("--network-policy/--no-network-policy", default=True,
                     help="Deny ingress except from the toolkit namespace"),
        click.option("--components-log-level", type=click.Choice(list(LOG_LEVELS)), default="info",
                     show_default=True, help="Log level of the installed controllers"),
        click.option("--cluster-domain", default="cluster.local", show_default=True,
                     help="Internal cluster domain"),
        click.option("--toleration-keys", multiple=True, help="Toleration keys (comma separated)"),
        click.option("--manifests", "manifests_path", type=click.Path(file_okay=False, path_type=Path),
                     default=None, help="Directory of extra manifests to install"),
        click.option("--secret-name", default=None, help="Source secret name (default: namespace)"),
        click.option("--interval", type=int, default=60, show_default=True,
                     help="Sync interval in seconds"),
        click.option("--recurse-submodules", is_flag=True, help="Include Git submodules"),
        click.option("--ssh-key-algorithm", type=click.Choice([a.value for a in KeyAlgorithm]),
                     default="rsa", show_default=True, help="SSH key algorithm"),
        click.option("--ssh-rsa-bits", type=int, default=2048, show_default=True, help="RSA key size"),
        click.option("--ssh-ecdsa-curve", type=click.Choice(list(ECDSA_CURVES)), default="p384",
                     show_default=True, help="ECDSA curve"),
        click.option("--ssh-hostname", default="", help="SSH hostname used for the host key scan"),
        click.option("--author-name", default="Flux", show_default=True, help="Commit author name"),
        click.option("--author-email", default="", help="Commit author email"),
        click.option("--commit-message-appendix", default="", help="Text appended to commit messages"),
        click.option("--force", is_flag=True, help="Regenerate the source secret even if it exists"),
        click.option("-s", "--silent", is_flag=True, help="Assume yes to all prompts"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def build_options(ctx: click.Context, url: str, params: dict, **overrides) -> BootstrapOptions:
    """Assemble BootstrapOptions from CLI config and command parameters."""
    cfg = ctx.obj["config"]
    namespace = cfg.namespace
    target_path = params["target_path"].strip("/")
    secret_name = params["secret_name"] or namespace

    install = InstallOptions(
        namespace=namespace,
        version=params["version"],
        components=_split(params["components"]) or list(DEFAULT_COMPONENTS),
        components_extra=_split(params["components_extra"]),
        registry=params["registry"],
        image_pull_secret=params["image_pull_secret"],
        watch_all_namespaces=params["watch_all_namespaces"],
        network_policy=params["network_policy"],
        log_level=params["components_log_level"],
        cluster_domain=params["cluster_domain"],
        toleration_keys=_split(params["toleration_keys"]),
        target_path=target_path,
        manifests_path=params["manifests_path"],
    )
    parts = urlsplit(url)
    default_host = f"{parts.hostname}:{parts.port}" if parts.port else (parts.hostname or "")
    secret = SecretOptions(
        name=secret_name,
        namespace=namespace,
        key_algorithm=KeyAlgorithm(params["ssh_key_algorithm"]),
        rsa_bits=params["ssh_rsa_bits"],
        ecdsa_curve=params["ssh_ecdsa_curve"],
        ssh_hostname=params["ssh_hostname"] or default_host,
        force=params["force"],
    )
    sync = SyncOptions(
        name=namespace,
        namespace=namespace,
        branch=params["branch"],
        interval=params["interval"],
        secret_name=secret_name,
        target_path=target_path,
        recurse_submodules=params["recurse_submodules"],
    )
    options = BootstrapOptions(
        url=url,
        branch=params["branch"],
        path=target_path,
        author_name=params["author_name"],
        author_email=params["author_email"],
        commit_message_appendix=params["commit_message_appendix"],
        timeout=cfg.timeout,
        poll_interval=cfg.poll_interval,
        kubeconfig=cfg.kubeconfig,
        kubecontext=ctx.obj.get("kubecontext"),
        install=install,
        secret=secret,
        sync=sync,
    )
    for key, value in overrides.items():
        setattr(options, key, value)
    return options


def prompt_confirm(bundle: CredentialBundle) -> bool:
    """Ask the user to add the public key before continuing."""
    console.print(f"Please give the key access to your repository:\n{bundle.public_material}")
    answer = questionary.confirm("Have you added the deploy key to your repository?", default=True).ask()
    return bool(answer)


def run_bootstrap(
    options: BootstrapOptions,
    private_key: bytes | None = None,
    provider: Provider | None = None,
    confirm=auto_accept,
    known_hosts: str = "",
) -> None:
    """Wire collaborators for one run and execute it, exiting 1 on failure."""
    with tempfile.TemporaryDirectory(prefix="driftless-bootstrap-") as tmp:
        try:
            environment = KubernetesEnvironmentClient(options.kubeconfig, options.kubecontext)
            repository = GitCLIDriver(
                Path(tmp) / "repo",
                auth=options.auth,
                username=options.username,
                password=options.password,
                private_key=private_key,
                known_hosts=known_hosts,
            )
            orchestrator = BootstrapOrchestrator(
                options,
                repository,
                environment,
                provider=provider,
                confirm=confirm,
                on_event=print_event,
            )
            orchestrator.run()
        except BootstrapError as e:
            console.print(f"[red]✗[/red] {e}", highlight=False)
            sys.exit(1)
        finally:
            if provider is not None:
                provider.close()
    console.print("[green]✔[/green] bootstrap finished", highlight=False)


@click.group()
def bootstrap():
    """Bootstrap the toolkit on a cluster from a Git repository.

    Running bootstrap again against an already bootstrapped cluster is safe:
    it pushes nothing when the repository is up to date and upgrades the
    components when the version changed.
    """
    pass


@bootstrap.command("git")
@click.option("--url", required=True, help="Git repository URL (ssh://, http:// or https://)")
@click.option("-u", "--username", default="git", show_default=True, help="Basic auth username")
@click.option("-p", "--password", default="", help="Basic auth password, or the private key password")
@click.option("--private-key-file", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              default=None, help="Private key used to authenticate over SSH")
@common_options
@click.pass_context
def bootstrap_git(ctx, url, username, password, private_key_file, **params):
    """Bootstrap from any Git repository.

    Examples:

        # Bootstrap over SSH, generating a deploy key
        driftless bootstrap git --url=ssh://git@example.com/org/fleet --path=clusters/dev

        # Bootstrap over HTTPS with basic auth
        driftless bootstrap git --url=https://example.com/org/fleet -u user -p token
    """
    scheme = urlsplit(url).scheme
    ssh = scheme == "ssh"
    options = build_options(
        ctx,
        url,
        params,
        username=username,
        password=password if not ssh else "",
        auth=AuthMethod.SSH if ssh else (AuthMethod.BASIC if password else AuthMethod.NONE),
        private_key_file=private_key_file if ssh else None,
    )
    if ssh:
        options.secret.kind = CredentialKind.SSH
        options.secret.private_key_file = private_key_file
        options.secret.password = password
    else:
        options.secret.kind = CredentialKind.BASIC
        options.secret.username = username
        options.secret.password = password

    private_key = None
    known_hosts = ""
    if ssh and private_key_file is not None:
        try:
            private_key = decrypt_private_key(private_key_file.read_bytes(), password)
            # The clone verifies the remote against the same keys the cluster will trust.
            known_hosts = scan_host_keys(
                options.secret.ssh_hostname, timeout=options.secret.host_scan_timeout
            ).decode()
        except BootstrapError as e:
            console.print(f"[red]✗[/red] {e}", highlight=False)
            sys.exit(1)

    confirm = auto_accept if params["silent"] or not ssh else prompt_confirm
    run_bootstrap(options, private_key=private_key, confirm=confirm, known_hosts=known_hosts)


def _provider_command(ctx, provider: Provider, token: str, owner: str, repository: str,
                      personal: bool, private: bool, token_auth: bool, params: dict) -> None:
    url = provider.clone_url(owner, repository, ssh=False)
    options = build_options(
        ctx,
        url,
        params,
        auth=AuthMethod.BASIC,
        username="git",
        password=token,
        token_auth=token_auth,
        provider=ProviderOptions(
            owner=owner,
            repository=repository,
            private=private,
            personal=personal,
            hostname=provider.hostname,
            token=token,
        ),
    )
    if token_auth:
        options.secret.kind = CredentialKind.BASIC
        options.secret.username = "git"
        options.secret.password = token
    else:
        options.secret.kind = CredentialKind.SSH
        options.secret.ssh_hostname = params["ssh_hostname"] or provider.hostname
    run_bootstrap(options, provider=provider)


def provider_options(token_env: str):
    def decorator(func):
        options = [
            click.option("--owner", required=True, help="Repository owner (user or organization)"),
            click.option("--repository", required=True, help="Repository name"),
            click.option("--personal", is_flag=True, help="Owner is a user, not an organization"),
            click.option("--private/--public", default=True, help="Repository visibility"),
            click.option("--hostname", default="", help="Provider hostname for self-hosted instances"),
            click.option("--token-auth", is_flag=True,
                         help="Pull with the provider token instead of a generated deploy key"),
            click.option("--token", envvar=token_env, required=True,
                         help=f"Provider API token (env: {token_env})"),
        ]
        for option in reversed(options):
            func = option(func)
        return func

    return decorator


@bootstrap.command("github")
@provider_options("GITHUB_TOKEN")
@common_options
@click.pass_context
def bootstrap_github(ctx, owner, repository, personal, private, hostname, token_auth, token, **params):
    """Bootstrap from a GitHub repository, creating it if needed.

    Examples:

        driftless bootstrap github --owner=my-org --repository=fleet --path=clusters/prod
    """
    provider = GitHubProvider(token, hostname=hostname)
    _provider_command(ctx, provider, token, owner, repository, personal, private, token_auth, params)


@bootstrap.command("gitlab")
@provider_options("GITLAB_TOKEN")
@common_options
@click.pass_context
def bootstrap_gitlab(ctx, owner, repository, personal, private, hostname, token_auth, token, **params):
    """Bootstrap from a GitLab project, creating it if needed.

    Examples:

        driftless bootstrap gitlab --owner=my-group --repository=fleet --token-auth
    """
    provider = GitLabProvider(token, hostname=hostname)
    _provider_command(ctx, provider, token, owner, repository, personal, private, token_auth, params)
