"""CLI tool that runs one face search in-process and prints the matches."""
import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from facesearch.core.container import ServiceContainer
from facesearch.core.exceptions import FaceSearchError, NoFaceDetectedError
from facesearch.core.logging import get_logger, setup_logging
from facesearch.services.scraping.sites import load_site_descriptors

logger = get_logger(__name__)

POLL_INTERVAL = 0.5


async def run_search(
    image_path: str,
    threshold: Optional[float] = None,
    sites_path: Optional[str] = None,
    container: Optional[ServiceContainer] = None,
) -> int:
    """
    Search the configured sites for the face in ``image_path``.

    Args:
        image_path: Path to the photo
        threshold: Threshold to apply to the results
        sites_path: Site descriptor file overriding SITE_DESCRIPTORS
        container: Pre-built container, mainly for tests

    Returns:
        Process exit code
    """
    image_file = Path(image_path)
    if not image_file.is_file():
        logger.error("Image file not found", path=image_path)
        return 1
    image_bytes = image_file.read_bytes()

    if container is None:
        sites = load_site_descriptors(sites_path) if sites_path else None
        container = ServiceContainer(sites=sites, start_sweepers=False)
    await container.initialize()

    try:
        pipeline = container.pipeline
        try:
            search_id = await pipeline.start_search(image_bytes, principal="cli")
        except NoFaceDetectedError:
            print("No face detected in the image")
            return 2

        results = await pipeline.get_results(search_id, threshold=threshold)
        while not results.status.is_terminal:
            await asyncio.sleep(POLL_INTERVAL)
            results = await pipeline.get_results(search_id)
            logger.debug("Search progress", progress=results.progress)

        print(f"Search {results.status.value}: {len(results.results)} match(es) at threshold {results.threshold}")
        for match in results.results:
            candidate = match.candidate
            print(f"  {match.best_similarity:.2f}  {candidate.source_site}  {candidate.title}  {candidate.page_url}")
        for error in results.errors:
            print(f"  ! {error.source}: {error.code.value} {error.message}")

        await pipeline.delete_session(search_id)
        return 0
    except FaceSearchError as e:
        logger.error("Search failed", code=e.code.value, error=str(e))
        return 1
    finally:
        await container.cleanup()


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Find videos whose thumbnails show the face in a photo")
    parser.add_argument("image_path", help="Path to the photo (JPEG, PNG or WebP)")
    parser.add_argument(
        "--threshold",
        type=float,
        default=None,
        help="Minimum similarity between 0.1 and 1.0"
    )
    parser.add_argument(
        "--sites",
        default=None,
        help="Site descriptor JSON file (defaults to SITE_DESCRIPTORS)"
    )
    args = parser.parse_args()

    setup_logging()
    sys.exit(asyncio.run(run_search(args.image_path, args.threshold, args.sites)))


if __name__ == "__main__":
    main()
