import argparse

import uvicorn

from xenoflow import config

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Start the Xenoflow API server")
    parser.add_argument("--host", type=str, default=config.MASTER_HOST)
    parser.add_argument("--port", type=int, default=config.MASTER_PORT)
    args = parser.parse_args()

    if config.WORKER_PORTS:
        print(f"Dispatching tasks to workers on ports {config.WORKER_PORTS}")
    else:
        print(f"Running tasks in-process under {config.WORK_DIR}")

    uvicorn.run(
        "xenoflow.main:app",
        host=args.host,
        port=args.port,
        log_level="info",
    )
