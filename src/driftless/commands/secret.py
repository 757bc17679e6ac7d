"""Secret commands.

This module provides `driftless create secret git|tls`, which provision the
same credential Secret bootstrap creates, either applied to the cluster or
printed as YAML with --export.
"""

from __future__ import annotations

import sys
from pathlib import Path
from urllib.parse import urlsplit

import click

from ..bootstrap import (
    CredentialKind,
    CredentialProvisioner,
    EnvironmentApplier,
    KeyAlgorithm,
    KubernetesEnvironmentClient,
    ManifestGenerator,
    SecretOptions,
)
from ..bootstrap.manifests import dump_objects
from ..bootstrap.options import ECDSA_CURVES
from ..errors import BootstrapError
from .bootstrap import console


def _labels(values: tuple[str, ...]) -> dict[str, str]:
    labels = {}
    for value in values:
        key, sep, val = value.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"invalid label '{value}', expected key=value", param_hint="--label")
        labels[key] = val
    return labels


def provision_secret(ctx: click.Context, options: SecretOptions, export: bool) -> None:
    """Generate the secret and either print or upsert it."""
    cfg = ctx.obj["config"]
    generator = ManifestGenerator()
    try:
        options.validate()
        if export:
            bundle = CredentialProvisioner().generate(options)
            click.echo(dump_objects([generator.build_secret(bundle, options)]).decode(), nl=False)
            return

        environment = KubernetesEnvironmentClient(cfg.kubeconfig, ctx.obj.get("kubecontext"))
        bundle = CredentialProvisioner(environment).generate(options)
        if bundle.public_material:
            console.print("[cyan]►[/cyan] deploy key:", bundle.public_material, highlight=False)
        EnvironmentApplier(environment).upsert(generator.build_secret(bundle, options))
    except BootstrapError as e:
        console.print(f"[red]✗[/red] {e}", highlight=False)
        sys.exit(1)
    console.print(
        f"[green]✔[/green] secret '{options.name}' created in '{options.namespace}' namespace",
        highlight=False,
    )


@click.group()
def create():
    """Create or update resources."""
    pass


@create.group("secret")
def secret():
    """Create or update credential secrets."""
    pass


@secret.command("git")
@click.argument("name")
@click.option("--url", required=True, help="Git repository URL")
@click.option("-u", "--username", default="", help="Basic auth username")
@click.option("-p", "--password", default="", help="Basic auth password, or the private key password")
@click.option("--ssh-key-algorithm", type=click.Choice([a.value for a in KeyAlgorithm]),
              default="rsa", show_default=True, help="SSH key algorithm")
@click.option("--ssh-rsa-bits", type=int, default=2048, show_default=True, help="RSA key size")
@click.option("--ssh-ecdsa-curve", type=click.Choice(list(ECDSA_CURVES)), default="p384",
              show_default=True, help="ECDSA curve")
@click.option("--private-key-file", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              default=None, help="Use this private key instead of generating one")
@click.option("--ca-file", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              default=None, help="CA certificate for HTTPS")
@click.option("--label", "labels", multiple=True, help="Secret label (key=value)")
@click.option("--export", is_flag=True, help="Print the secret as YAML instead of applying it")
@click.pass_context
def secret_git(ctx, name, url, username, password, ssh_key_algorithm, ssh_rsa_bits,
               ssh_ecdsa_curve, private_key_file, ca_file, labels, export):
    """Create a Git authentication secret.

    For ssh:// URLs an SSH keypair is generated (or loaded from
    --private-key-file) and the host keys are scanned; for http(s):// URLs
    the username and password are stored.

    Examples:

        driftless create secret git podinfo-auth --url=ssh://git@github.com/org/podinfo

        driftless create secret git podinfo-auth --url=https://github.com/org/podinfo \\
            -u user -p token --export
    """
    parts = urlsplit(url)
    namespace = ctx.obj["config"].namespace
    options = SecretOptions(name=name, namespace=namespace, labels=_labels(labels), force=True)
    if parts.scheme == "ssh":
        options.kind = CredentialKind.SSH
        options.ssh_hostname = f"{parts.hostname}:{parts.port}" if parts.port else (parts.hostname or "")
        options.key_algorithm = KeyAlgorithm(ssh_key_algorithm)
        options.rsa_bits = ssh_rsa_bits
        options.ecdsa_curve = ssh_ecdsa_curve
        options.private_key_file = private_key_file
        options.password = password
    elif parts.scheme in ("http", "https"):
        options.kind = CredentialKind.BASIC
        options.username = username
        options.password = password
        options.ca_file = ca_file
    else:
        console.print(f"[red]✗[/red] git URL scheme '{parts.scheme}' not supported", highlight=False)
        sys.exit(1)
    provision_secret(ctx, options, export)


@secret.command("tls")
@click.argument("name")
@click.option("--cert-file", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              default=None, help="Client certificate (PEM)")
@click.option("--key-file", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              default=None, help="Client private key (PEM)")
@click.option("--ca-file", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              default=None, help="CA certificate (PEM)")
@click.option("--label", "labels", multiple=True, help="Secret label (key=value)")
@click.option("--export", is_flag=True, help="Print the secret as YAML instead of applying it")
@click.pass_context
def secret_tls(ctx, name, cert_file, key_file, ca_file, labels, export):
    """Create a TLS authentication secret.

    Examples:

        driftless create secret tls certs --cert-file=./client.crt --key-file=./client.key --export
    """
    options = SecretOptions(
        name=name,
        namespace=ctx.obj["config"].namespace,
        kind=CredentialKind.TLS,
        cert_file=cert_file,
        key_file=key_file,
        ca_file=ca_file,
        labels=_labels(labels),
        force=True,
    )
    provision_secret(ctx, options, export)
