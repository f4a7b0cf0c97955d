"""Typer CLI entrypoint."""

from __future__ import annotations

import logging
from pathlib import Path

import typer

from ibootctl.api import (
    Client,
    ConnectionPolicy,
    IBootCtlError,
    ProgressEvent,
    SendOptions,
    get_device_by_hardware_model,
    get_device_by_product_type,
    mode_to_str,
)
from ibootctl.core.catalog import default_catalog

app = typer.Typer(help="Talk to Apple iBoot/iBSS devices in Recovery, DFU, or WTF mode")

_ECID_OPTION = typer.Option("0", "--ecid", envvar="IBOOTCTL_ECID", help="Only accept this ECID (hex or decimal)")
_POLICY_OPTION = typer.Option("accept-all", "--policy", help="accept-all, accept-when-empty, or one-connection")
_TIMEOUT_OPTION = typer.Option(10.0, "--timeout", help="Seconds to wait for a device")


def _fail(exc: Exception) -> typer.Exit:
    typer.echo(f"Error: {exc}", err=True)
    return typer.Exit(code=1)


def _connect(ecid: str, policy: str, timeout: float) -> Client:
    try:
        ecid_value = int(ecid, 0)
    except ValueError:
        raise typer.BadParameter(f"Invalid ECID '{ecid}'", param_hint="--ecid") from None
    try:
        policy_value = ConnectionPolicy(policy)
    except ValueError:
        raise typer.BadParameter(f"Unknown policy '{policy}'", param_hint="--policy") from None

    client = Client(policy=policy_value, ecid=ecid_value)
    try:
        client.wait_for_device(timeout)
    except IBootCtlError:
        client.close()
        raise
    return client


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")) -> None:
    if verbose:
        logging.basicConfig(level=logging.DEBUG)


@app.command("info")
def device_info(
    ecid: str = _ECID_OPTION,
    policy: str = _POLICY_OPTION,
    timeout: float = _TIMEOUT_OPTION,
) -> None:
    """Print identity, nonces, and mode of the attached device."""
    try:
        with _connect(ecid, policy, timeout) as client:
            info = client.get_device_info()
            mode = client.get_mode()
            device = client.get_device()
    except IBootCtlError as exc:
        raise _fail(exc) from None

    typer.echo(f"CPID: {info.cpid:#x}")
    typer.echo(f"CPRV: {info.cprv:#x}")
    typer.echo(f"BDID: {info.bdid:#x}")
    typer.echo(f"ECID: {info.ecid:#x}")
    typer.echo(f"CPFM: {info.cpfm:#x}")
    typer.echo(f"SCEP: {info.scep:#x}")
    typer.echo(f"IBFL: {info.ibfl:#x}")
    typer.echo(f"SRTG: {info.srtg or 'N/A'}")
    typer.echo(f"SRNM: {info.srnm or 'N/A'}")
    typer.echo(f"IMEI: {info.imei or 'N/A'}")
    typer.echo(f"NONC: {info.ap_nonce.hex() if info.ap_nonce else 'N/A'}")
    typer.echo(f"SNON: {info.sep_nonce.hex() if info.sep_nonce else 'N/A'}")
    if info.pwnd:
        typer.echo(f"PWND: {info.pwnd}")
    typer.echo(f"MODE: {mode_to_str(mode)}")
    if device is not None:
        typer.echo(f"PRODUCT: {device.product_type}")
        typer.echo(f"MODEL: {device.hardware_model}")
        typer.echo(f"NAME: {device.display_name}")


@app.command("mode")
def device_mode(
    ecid: str = _ECID_OPTION,
    policy: str = _POLICY_OPTION,
    timeout: float = _TIMEOUT_OPTION,
) -> None:
    """Print the attached device's mode."""
    try:
        with _connect(ecid, policy, timeout) as client:
            mode = client.get_mode()
    except IBootCtlError as exc:
        raise _fail(exc) from None
    typer.echo(f"{mode_to_str(mode)} Mode")


@app.command("send")
def send_file(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True),
    notify_finish: bool = typer.Option(False, "--notify-finish", help="Tell a DFU device the upload is complete"),
    force_zlp: bool = typer.Option(False, "--force-zlp", help="Send a zero-length packet after notify-finish"),
    ecid: str = _ECID_OPTION,
    policy: str = _POLICY_OPTION,
    timeout: float = _TIMEOUT_OPTION,
) -> None:
    """Upload a file (iBSS, iBEC, ramdisk, ...) to the attached device."""
    options = SendOptions.NONE
    if notify_finish:
        options |= SendOptions.DFU_NOTIFY_FINISH
    if force_zlp:
        options |= SendOptions.DFU_FORCE_ZLP

    data = path.read_bytes()

    def _progress(event: ProgressEvent) -> None:
        typer.echo(f"\r[{event.progress:6.2f}%] {event.size}/{len(data)} bytes", nl=False)

    try:
        with _connect(ecid, policy, timeout) as client:
            client.send_buffer(data, options, progress=_progress)
    except IBootCtlError as exc:
        typer.echo("")
        raise _fail(exc) from None
    typer.echo("")
    typer.echo(f"Sent {len(data)} bytes from {path}")


@app.command("command")
def send_command(
    command: str,
    ecid: str = _ECID_OPTION,
    policy: str = _POLICY_OPTION,
    timeout: float = _TIMEOUT_OPTION,
) -> None:
    """Send a console command to a device in Recovery mode."""
    try:
        with _connect(ecid, policy, timeout) as client:
            client.send_command(command)
    except IBootCtlError as exc:
        raise _fail(exc) from None


@app.command("getenv")
def getenv(
    variable: str,
    ecid: str = _ECID_OPTION,
    policy: str = _POLICY_OPTION,
    timeout: float = _TIMEOUT_OPTION,
) -> None:
    """Print an environment variable's value."""
    try:
        with _connect(ecid, policy, timeout) as client:
            value = client.getenv(variable)
    except IBootCtlError as exc:
        raise _fail(exc) from None
    typer.echo(f"{variable} = {value}")


@app.command("setenv", context_settings={"ignore_unknown_options": True})
def setenv(
    variable: str,
    value: str,
    np: bool = typer.Option(False, "--np", help="Use setenvnp instead of setenv"),
    save: bool = typer.Option(False, "--save", help="Run saveenv afterwards"),
    ecid: str = _ECID_OPTION,
    policy: str = _POLICY_OPTION,
    timeout: float = _TIMEOUT_OPTION,
) -> None:
    """Set an environment variable."""
    try:
        with _connect(ecid, policy, timeout) as client:
            if np:
                client.setenv_np(variable, value)
            else:
                client.setenv(variable, value)
            if save:
                client.saveenv()
    except IBootCtlError as exc:
        raise _fail(exc) from None


@app.command("saveenv")
def saveenv(
    ecid: str = _ECID_OPTION,
    policy: str = _POLICY_OPTION,
    timeout: float = _TIMEOUT_OPTION,
) -> None:
    """Persist the environment to NVRAM."""
    try:
        with _connect(ecid, policy, timeout) as client:
            client.saveenv()
    except IBootCtlError as exc:
        raise _fail(exc) from None


@app.command("reboot")
def reboot(
    ecid: str = _ECID_OPTION,
    policy: str = _POLICY_OPTION,
    timeout: float = _TIMEOUT_OPTION,
) -> None:
    """Reboot a device in Recovery mode."""
    try:
        with _connect(ecid, policy, timeout) as client:
            client.reboot()
    except IBootCtlError as exc:
        raise _fail(exc) from None


@app.command("reset")
def reset(
    ecid: str = _ECID_OPTION,
    policy: str = _POLICY_OPTION,
    timeout: float = _TIMEOUT_OPTION,
) -> None:
    """USB-reset the attached device."""
    try:
        with _connect(ecid, policy, timeout) as client:
            client.reset()
    except IBootCtlError as exc:
        raise _fail(exc) from None


@app.command("lookup")
def lookup(
    product_type: str | None = typer.Option(None, "--product-type", help="e.g. iPhone10,3"),
    model: str | None = typer.Option(None, "--model", help="Hardware model, e.g. d22ap"),
) -> None:
    """Look up the device catalog without a device attached."""
    try:
        catalog = default_catalog()
        for warning in catalog.warnings:
            typer.echo(f"Warning: {warning}", err=True)
        if product_type:
            device = get_device_by_product_type(product_type, catalog.devices)
        elif model:
            device = get_device_by_hardware_model(model, catalog.devices)
        else:
            for entry in catalog.devices:
                typer.echo(f"{entry.product_type} {entry.hardware_model} {entry.display_name}")
            return
    except IBootCtlError as exc:
        raise _fail(exc) from None

    if device is None:
        typer.echo("Error: No matching device in catalog", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"{device.product_type}: {device.display_name}")
    typer.echo(f"  model: {device.hardware_model}")
    typer.echo(f"  chip_id: {device.chip_id:#x} board_id: {device.board_id:#x}")


def run() -> None:
    app()


if __name__ == "__main__":
    run()
