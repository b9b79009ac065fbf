"""
ytconvert - command line front-end.

Uses the same services as the HTTP API, against the same database and
directories, so jobs started here show up in ``GET /api/conversions``.
"""

import time
from pathlib import Path

import click

from ytconvert.config import settings
from ytconvert.logging_config import setup_logging
from ytconvert.models import JobStatus
from ytconvert.resolver import ResolutionError, YouTubeResolver
from ytconvert.services import Services, build_services
from ytconvert.storage import format_file_size, sanitize_filename
from ytconvert.worker_pool import CapacityError


TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def _open_services() -> Services:
    return build_services(settings)


@click.group()
@click.option("--verbose", is_flag=True, help="Show service logs on the console")
def cli(verbose):
    """ytconvert - download YouTube videos and convert them with ffmpeg"""
    setup_logging(
        log_level=settings.log_level.value if verbose else "WARNING",
        use_json=False
    )


# ---------------- List Files ----------------
@cli.command(name="list")
def list_files():
    """List ongoing downloads and completed files"""
    services = _open_services()
    try:
        ongoing = [
            (name, size) for name, size in services.storage.list_files(settings.ongoing_dir)
            if name.endswith(".mp4")
        ]
        completed = services.storage.list_files()

        if not ongoing and not completed:
            click.echo("No files found.")
            return

        if ongoing:
            click.echo("Ongoing downloads:")
            for i, (name, size) in enumerate(ongoing, start=1):
                click.echo(f"  {i}. {name} ({format_file_size(size)})")

        if completed:
            click.echo("Completed files:")
            for i, (name, size) in enumerate(completed, start=1):
                click.echo(f"  {i}. {name} ({format_file_size(size)})")
    finally:
        services.shutdown()


# ---------------- Convert ----------------
@cli.command()
@click.argument("file")
@click.option("--format", "format_", type=click.Choice(["mpg", "avi", "mp4"]), required=True, help="Target format")
@click.option("--delete-original", is_flag=True, help="Remove the input file after a successful conversion")
def convert(file, format_, delete_original):
    """Convert a local MP4 FILE (a path, or a name in the ongoing directory)"""
    input_path = Path(file)
    if not input_path.is_file():
        input_path = settings.ongoing_dir / file
    if not input_path.is_file():
        raise click.ClickException(f"File not found: {file}")

    services = _open_services()
    try:
        click.echo(f"Converting {input_path.name} to {format_}...")
        job = services.conversions.convert_local(input_path, format_, f"cli_{int(time.time())}")

        if job.status != JobStatus.COMPLETED:
            raise click.ClickException(f"Conversion failed: {job.error}")

        click.echo(f"✓ Conversion completed: {job.filename}")
        if delete_original:
            input_path.unlink()
            click.echo("Original file deleted.")
    finally:
        services.shutdown()


# ---------------- Status ----------------
@cli.command()
def status():
    """Show the status of all conversion jobs"""
    services = _open_services()
    try:
        jobs = services.conversions.list_jobs()
        if not jobs:
            click.echo("No conversions found.")
            return

        for job in jobs:
            click.echo("")
            click.echo(f"Job ID: {job['id']}")
            click.echo(f"Format: {(job['format'] or 'mp4').upper()}")
            click.echo(f"Status: {job['status']}")
            click.echo(f"Started: {job['start_time'].strftime(TIME_FORMAT)}")

            if job["status"] == JobStatus.COMPLETED.value:
                if job["filename"]:
                    click.echo(f"File: {job['filename']} ({job['size']})")
                if job["end_time"]:
                    click.echo(f"Completed: {job['end_time'].strftime(TIME_FORMAT)}")
            elif job["status"] == JobStatus.FAILED.value:
                if job["error"]:
                    click.echo(f"Error: {job['error']}")
                if job["can_retry"]:
                    click.echo("Can be retried.")
    finally:
        services.shutdown()


# ---------------- Download ----------------
@cli.command()
@click.argument("url")
@click.option("--convert/--no-convert", default=False, help="Transcode after downloading")
@click.option("--format", "format_", default="", help="Target format when converting (default mp4)")
@click.option("--poll-interval", default=2.0, type=float, show_default=True, help="Seconds between status checks")
def download(url, convert, format_, poll_interval):
    """Download a YouTube video and wait for it to finish"""
    try:
        video_id = YouTubeResolver.extract_video_id(url)
    except ResolutionError as e:
        raise click.ClickException(f"Invalid YouTube URL: {e}")

    click.echo(f"Extracted video ID: {video_id}")

    services = _open_services()
    try:
        click.echo("Getting download URL...")
        try:
            resolved = services.resolver.resolve(video_id)
        except ResolutionError as e:
            raise click.ClickException(f"Failed to get download URL: {e}")

        video_title = services.resolver.title_for(resolved)
        click.echo(f"Video title: {video_title}")

        job_id = f"{video_id}_{int(time.time())}"
        click.echo(
            f"Waiting for file to be ready "
            f"(this may take up to {settings.settle_delay_seconds:g} seconds)..."
        )

        try:
            if convert:
                record = services.conversions.submit(job_id, url, format_, resolved.file_url, video_title)
            else:
                filename = (sanitize_filename(video_title) or video_id) + ".mp4"
                record = services.direct_downloads.submit(job_id, url, filename, resolved.file_url)
        except CapacityError as e:
            raise click.ClickException(str(e))

        while True:
            time.sleep(poll_interval)
            with record.lock:
                state = record.status
                error = record.error
            if state.is_terminal:
                break

        if state == JobStatus.FAILED:
            raise click.ClickException(f"Download failed: {error or 'Unknown error'}")

        if convert:
            with record.lock:
                filename = record.filename
        click.echo(f"✓ Completed: {filename}")
        click.echo(f"File saved to: {settings.completed_dir / filename}")
    finally:
        services.shutdown()


# ---------------- Serve ----------------
@cli.command()
def serve():
    """Run the HTTP API"""
    from ytconvert.main import run

    run()


if __name__ == "__main__":
    cli()
