"""Example usage of the async image export API."""

import asyncio
import json
import logging
import sys

# Add parent directory to path
sys.path.insert(0, "src")

from imgex import (
    CancellationToken,
    ExportOptions,
    ImageExportError,
    export_filesystem_with_options,
    get_image_config,
    get_image_summary,
)

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def on_progress(current: int, total: int, description: str) -> None:
    logger.info(f"[{current}/{total}] {description}")


async def main():
    """Example export operations."""
    image = "alpine:3.19"

    try:
        # Config lookup never downloads layers
        logger.info(f"Fetching config for {image}...")
        config = json.loads(await get_image_config(image))
        logger.info(f"Cmd: {config.get('config', {}).get('Cmd')}")

        summary = await get_image_summary(image)
        logger.info(
            f"Platform: {summary.os}/{summary.architecture}, layers: {len(summary.diff_ids)}"
        )

        # Flattened filesystem, gzip compressed
        path = await export_filesystem_with_options(
            image,
            "alpine-rootfs.tar",
            options=ExportOptions(compress=True, progress=on_progress),
        )
        logger.info(f"✓ Wrote {path}")

    except ImageExportError as e:
        logger.error(f"Export failed: {e.describe()}")


async def cancelled_export():
    """Cancel an export from another task once it is under way."""
    token = CancellationToken()
    options = ExportOptions(progress=on_progress, cancel=token)

    async def cancel_soon():
        await asyncio.sleep(0.5)
        logger.info("Cancelling export...")
        token.cancel()

    try:
        await asyncio.gather(
            export_filesystem_with_options("ubuntu:22.04", "ubuntu-rootfs.tar", options=options),
            cancel_soon(),
        )
    except ImageExportError as e:
        logger.info(f"Export stopped: {e.describe()}")


if __name__ == "__main__":
    print("=== Export Example ===")
    asyncio.run(main())

    print("\n=== Cancellation Example ===")
    asyncio.run(cancelled_export())
