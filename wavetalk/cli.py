"""
CLI entry point for WaveTalk.

Commands:
  wavetalk setup       - Configure WaveTalk (API key, backend)
  wavetalk status      - Show current configuration
  wavetalk start       - Run the dictation daemon in the foreground
  wavetalk transcribe  - Transcribe one audio file (used as the out-of-process job)
  wavetalk devices     - List audio input devices
"""

import logging
import os

import click

from wavetalk import __version__
from wavetalk.config import BACKENDS, DEFAULT_MODELS, Config, ConfigurationError, is_placeholder_key
from wavetalk.log import setup_logging


@click.group()
@click.version_option(version=__version__, prog_name="wavetalk")
def main():
    """WaveTalk - Push-to-talk voice dictation for Linux.

    Hold the hotkey to record, release to transcribe.
    The transcript is typed into the focused window.
    """
    pass


@main.command()
@click.option("--api-key", prompt="API Key", hide_input=True,
              help="Your speech-to-text API key")
@click.option("--backend", type=click.Choice(BACKENDS), default=None,
              help="Transcription service to use")
def setup(api_key: str, backend: str):
    """Configure WaveTalk with your API key and backend."""
    config = Config.load()
    if backend and backend != config.api.backend:
        config.api.backend = backend
        config.api.model = DEFAULT_MODELS[backend]
    config.api.api_key = api_key
    config.save()

    click.echo(click.style("✓ ", fg="green") + "Configuration saved!")
    click.echo(f"  Config file: {Config.get_config_path()}")
    click.echo()
    click.echo("You can now start WaveTalk with: " + click.style("wavetalk start", bold=True))


@main.command()
def status():
    """Show current status and configuration."""
    config = Config.load()
    errors = config.validate()

    click.echo(click.style("WaveTalk Status", bold=True))
    click.echo("─" * 30)
    click.echo(f"Config: {Config.get_config_path()}")

    api_key = config.api.resolved_api_key()
    if not is_placeholder_key(api_key):
        masked_key = api_key[:4] + "..." + api_key[-4:]
        click.echo(f"API Key: {masked_key}")
    else:
        click.echo(click.style("API Key: Not set", fg="yellow"))

    click.echo(f"Backend: {config.api.backend} ({config.api.model}, {config.api.language})")
    click.echo(f"Audio: {config.audio.sample_rate}Hz, {config.audio.channels}ch")
    click.echo(f"Capture file: {config.audio.capture_path}")
    click.echo(f"Hotkey: {config.hotkey.trigger}")
    click.echo(f"Delivery: {config.delivery.method}")
    click.echo()

    if errors:
        click.echo(click.style("Issues:", fg="yellow"))
        for error in errors:
            click.echo(f"  ⚠ {error}")
    else:
        click.echo(click.style("✓ Ready to use", fg="green"))


@main.command()
@click.option("--verbose", "-v", is_flag=True, help="Log debug output")
@click.option("--manual", is_flag=True, help="Use Enter in this terminal instead of the global hotkey")
def start(verbose: bool, manual: bool):
    """Run the dictation daemon in the foreground."""
    from wavetalk.daemon import DaemonProcess
    from wavetalk.hotkey import HotkeyError
    from wavetalk.injector import DeliveryError

    setup_logging(logging.DEBUG if verbose else logging.INFO)

    config = Config.load()
    errors = config.validate()

    if errors:
        click.echo(click.style("Cannot start - configuration issues:", fg="red"))
        for error in errors:
            click.echo(f"  ⚠ {error}")
        raise SystemExit(1)

    click.echo(click.style("Starting WaveTalk...", fg="green"))
    click.echo("Press Ctrl+C to stop")
    click.echo()

    try:
        DaemonProcess(config=config, manual=manual).run()
    except (ConfigurationError, HotkeyError, DeliveryError) as e:
        click.echo(click.style(f"✗ {e}", fg="red"), err=True)
        raise SystemExit(1)


@main.command()
@click.argument("audio_file", type=click.Path())
def transcribe(audio_file: str):
    """Transcribe AUDIO_FILE and print the text.

    Exits 0 with the transcript on stdout, or 1 with a message on stderr.
    """
    from wavetalk.transcriber import ServiceError, create_client

    if not os.path.isfile(audio_file):
        click.echo(f"Error: Audio file not found: {audio_file}", err=True)
        raise SystemExit(1)

    setup_logging(logging.WARNING, console=False)

    try:
        text = create_client(Config.load()).transcribe_file(audio_file)
    except (ConfigurationError, ServiceError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    click.echo(text, nl=False)


@main.command()
def devices():
    """List audio input devices."""
    from wavetalk.audio import AudioCapture

    default = AudioCapture.get_default_device()
    default_index = default["index"] if default else None

    for dev in AudioCapture.list_devices():
        marker = "*" if dev["index"] == default_index else " "
        click.echo(f"{marker} [{dev['index']}] {dev['name']} "
                   f"({dev['channels']}ch, {int(dev['sample_rate'])}Hz)")


if __name__ == "__main__":
    main()
