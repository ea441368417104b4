import argparse
import os

import uvicorn

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Start a Xenoflow worker")
    parser.add_argument(
        "--port", type=int, default=8001, help="Port to run the worker on"
    )
    parser.add_argument(
        "--host", type=str, default="127.0.0.1", help="Host to bind to"
    )
    parser.add_argument(
        "--work-dir", type=str, default=None, help="Directory for task attempts"
    )
    parser.add_argument(
        "--docker", action="store_true", help="Run tasks inside their container image"
    )
    parser.add_argument(
        "--check-disk",
        action="store_true",
        help="Reject attempts whose disk allocation exceeds free space",
    )
    args = parser.parse_args()

    # Read by xenoflow.config when uvicorn imports the worker app.
    os.environ["WORKER_ID"] = f"worker-{args.port}"
    if args.work_dir:
        os.environ["XENOFLOW_WORK_DIR"] = args.work_dir
    if args.docker:
        os.environ["XENOFLOW_USE_DOCKER"] = "1"
    if args.check_disk:
        os.environ["XENOFLOW_CHECK_DISK"] = "1"

    uvicorn.run(
        "xenoflow.worker.server:app",
        host=args.host,
        port=args.port,
        log_level="info",
    )
