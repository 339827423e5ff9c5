"""Example usage of the async mirror API."""

import asyncio
import logging
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, "src")

from oci_mirror import (
    MirrorError,
    MissingBlobsError,
    batch_deserialize_archives,
    batch_serialize_images,
    deserialize_archive,
    serialize_image,
)

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def main():
    """Serialize an image to an archive and push it to another repository."""
    registry_url = "http://localhost:15000"
    archive = Path("myapp.tar.zst")
    ledger = Path("myapp.ledger")

    try:
        logger.info("Serializing myapp:v1...")
        digest = await serialize_image(
            registry_url,
            "myapp:v1",
            archive,
            checkpoint_path=ledger,
            compression="zstd",
        )
        logger.info(f"✓ Serialized {digest} to {archive}")

        logger.info("Extracting archive to mirror/myapp...")
        root = await deserialize_archive(archive, registry_url, "mirror/myapp", tag="v1")
        logger.info(f"✓ Root index {root} tagged mirror/myapp:v1")

    except MissingBlobsError as e:
        logger.error(f"Archive is incomplete: {e.missing}")
    except MirrorError as e:
        logger.error(f"Mirror error: {e}")


async def resume_transfer():
    """Continue a transfer after the medium filled up at a known offset."""
    registry_url = "http://localhost:15000"

    try:
        # bytes known to be on the first medium
        written = Path("myapp.tar.zst").stat().st_size
        digest = await serialize_image(
            registry_url,
            "myapp:v1",
            "myapp-2.tar.zst",
            compression="zstd",
            resume_from=[("myapp.ledger", written)],
        )
        logger.info(f"✓ Second archive for {digest} holds the remaining blobs")

    except MirrorError as e:
        logger.error(f"Mirror error: {e}")
    except OSError as e:
        logger.error(f"No previous transfer to resume: {e}")


async def batch_operations():
    """Serialize several images concurrently."""
    registry_url = "http://localhost:15000"

    results = await batch_serialize_images(
        registry_url,
        ["nginx:alpine", "myapp:v1", "myapp:v2"],
        "./sync",
        compression="gzip",
        existing_images=["myapp:v0"],
    )
    for result in results:
        if result.ok:
            logger.info(f"{result.item.reference}: {result.item.dest_path}")
        else:
            logger.error(f"{result.item.reference}: {result.error}")


async def batch_extract():
    """Push every archive of a sync directory; reruns skip what already went through."""
    registry_url = "http://localhost:15000"

    results = await batch_deserialize_archives("./sync", registry_url, "mirror/images")
    for result in results:
        if result.skipped:
            logger.info(f"{result.item.name}: already synced")
        elif result.ok:
            logger.info(f"✓ {result.item.name}: {result.descriptor.digest}")
        else:
            logger.error(f"{result.item.name}: {result.error}")


if __name__ == "__main__":
    print("=== Serialize and Extract ===")
    asyncio.run(main())

    print("\n=== Resume Transfer ===")
    asyncio.run(resume_transfer())

    print("\n=== Batch Serialize ===")
    asyncio.run(batch_operations())

    print("\n=== Batch Extract ===")
    asyncio.run(batch_extract())
