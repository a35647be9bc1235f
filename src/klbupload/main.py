"""Command line entrypoint for uploading a single file."""

import argparse
import asyncio
import dataclasses
import logging
import sys
from typing import Any, Sequence

from klbupload.core.config import settings
from klbupload.core.logging import setup_logging
from klbupload.models.upload import CompletionResult, UploadRequest
from klbupload.transport.http import HttpxTransport
from klbupload.upload.exceptions import UploadError
from klbupload.upload.orchestrator import UploadOrchestrator
from klbupload.upload.policy import UploadPolicy
from klbupload.upload.source import FileSource

logger = logging.getLogger(__name__)


def _parse_params(pairs: Sequence[str]) -> dict[str, Any]:
    params: dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"Expected key=value, got {pair!r}")
        params[key] = value
    return params


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="klb-upload", description=__doc__)
    parser.add_argument("file", help="Path of the file to upload")
    parser.add_argument("--endpoint", required=True, help="Negotiation endpoint, e.g. Drive/Item/xyz:upload")
    parser.add_argument("--base-url", default=settings.KLB_API_BASE_URL, help="KLB API base URL")
    parser.add_argument("--token", default=None, help="Bearer token for the KLB API")
    parser.add_argument("--param", action="append", default=[], help="Extra negotiation parameter key=value")
    parser.add_argument("--concurrency", type=int, default=settings.UPLOAD_MAX_CONCURRENCY)
    return parser


async def upload_file(args: argparse.Namespace, params: dict[str, Any]) -> CompletionResult:
    request = UploadRequest.from_path(args.file, params=params)
    source = FileSource(args.file)

    policy = dataclasses.replace(UploadPolicy.from_settings(), max_concurrency=args.concurrency)

    headers = {"Authorization": f"Bearer {args.token}"} if args.token else None
    async with HttpxTransport(base_url=args.base_url, headers=headers) as transport:
        last_reported = -1

        def report(fraction: float) -> None:
            nonlocal last_reported
            percent = int(fraction * 100)
            if percent != last_reported:
                last_reported = percent
                logger.info(f"Upload progress {percent}%", extra={"progress": fraction})

        orchestrator = UploadOrchestrator(transport, policy=policy, on_progress=report)
        return await orchestrator.start(request, args.endpoint, source)


def main(argv: Sequence[str] | None = None) -> int:
    setup_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        params = _parse_params(args.param)
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))

    try:
        result = asyncio.run(upload_file(args, params))
    except UploadError as e:
        logger.error(
            f"Upload failed: {e}",
            extra={"error_type": type(e).__name__, "token": e.token, "status_code": e.status_code},
        )
        return 1
    except OSError as e:
        logger.error(f"Cannot read {args.file}: {e}")
        return 1

    print(result.model_dump_json(by_alias=True))
    return 0


if __name__ == "__main__":
    sys.exit(main())
