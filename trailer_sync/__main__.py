"""
Single entrypoint for trailer-sync jobs.

Usage:
    JOB_TYPE=update python -m trailer_sync         # Run one update pass (UPDATE_TYPES=all)
    JOB_TYPE=refresh_item python -m trailer_sync   # Refetch REFRESH_ITEM_ID only, no purge
    JOB_TYPE=check_token python -m trailer_sync    # Verify GITHUB_TOKEN and print the account

Configuration comes from the environment or .env.local, see trailer_sync.core.config.
"""

import asyncio
import logging
import os
import sys
from dataclasses import asdict

from trailer_sync.core.config import get_settings
from trailer_sync.core.errors import WaveFailedError
from trailer_sync.core.logging_config import setup_logging


async def run_job(job_type: str) -> dict:
    """Run the specified job."""

    match job_type:
        case "update":
            from trailer_sync.jobs.update_job import UpdateRequest, run_update

            settings = get_settings()
            result = await run_update(UpdateRequest.from_settings(settings), settings)
            return asdict(result)

        case "refresh_item":
            from trailer_sync.jobs.update_job import refresh_item

            settings = get_settings()
            if not settings.refresh_item_id:
                raise ValueError("REFRESH_ITEM_ID environment variable is required")
            item = await refresh_item(settings.refresh_item_id, settings.refresh_with_comments, settings)
            return {"type": item.TYPE_NAME, "id": item.id, "state": item.state.value}

        case "check_token":
            from trailer_sync.jobs.update_job import check_token

            return {"login": await check_token()}

        case _:
            raise ValueError(f"Unknown job type: {job_type}")


async def main() -> None:
    run_id = setup_logging()
    logger = logging.getLogger(__name__)

    job_type = os.getenv("JOB_TYPE", "update").lower()

    logger.info(
        "Starting job",
        extra={"job_type": job_type, "run_id": run_id},
    )

    try:
        result = await run_job(job_type)
        logger.info(
            "Job completed successfully",
            extra={"job_type": job_type, "result": result},
        )

    except WaveFailedError as e:
        # Nothing was saved; on-disk state is that of the previous pass
        logger.error(str(e), extra={"job_type": job_type, "wave": e.wave})
        sys.exit(1)

    except Exception as e:
        logger.exception(
            f"Job failed: {e}",
            extra={"job_type": job_type},
        )
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
