import argparse
import asyncio
import logging
import sys

from xenoflow import config
from xenoflow.core.dag import build_graph
from xenoflow.core.errors import WorkflowError
from xenoflow.core.resources import ResourceEstimator
from xenoflow.core.scheduler import WorkflowExecutor
from xenoflow.pipelines.xenograft import (
    PipelineImages,
    build_xenograft_workflow,
    image_minimums,
    xenograft_inputs,
    xenograft_params,
)
from xenoflow.worker.executor import LocalBackend

logger = logging.getLogger("run_pipeline")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Remove host contamination from a xenograft BAM on this machine"
    )
    parser.add_argument("--bam", required=True, help="Input sample BAM")
    parser.add_argument(
        "--reference",
        required=True,
        help="Chimeric reference FASTA (with .fai and BWA index files beside it)",
    )
    parser.add_argument("--sample-id", required=True)
    parser.add_argument("--read-group-id", required=True)
    parser.add_argument("--platform-unit", required=True)
    parser.add_argument("--sample-name", required=True)
    parser.add_argument("--platform", default="ILLUMINA")
    parser.add_argument(
        "--contaminant-tag",
        default="mm10_",
        help="Substring identifying host contigs in the chimeric reference",
    )
    parser.add_argument("--work-dir", default=config.WORK_DIR)
    parser.add_argument("--max-concurrency", type=int, default=config.MAX_CONCURRENCY)
    parser.add_argument(
        "--docker", action="store_true", default=config.USE_DOCKER,
        help="Run every step inside its container image",
    )
    return parser.parse_args(argv)


def main(argv=None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    args = parse_args(argv)

    images = PipelineImages.from_config()
    params = xenograft_params(
        sample_id=args.sample_id,
        read_group_id=args.read_group_id,
        platform_unit=args.platform_unit,
        sample_name=args.sample_name,
        platform=args.platform,
        contaminant_tag=args.contaminant_tag,
    )
    try:
        inputs = xenograft_inputs(args.bam, args.reference, params)
    except OSError as e:
        logger.error("Cannot read workflow input: %s", e)
        return 2
    except ValueError as e:
        logger.error("Invalid sample metadata: %s", e)
        return 2

    executor = WorkflowExecutor(
        LocalBackend(args.work_dir, use_docker=args.docker, check_disk=config.CHECK_DISK),
        estimator=ResourceEstimator(image_minimums(images)),
        max_concurrency=args.max_concurrency,
    )
    try:
        graph = build_graph(build_xenograft_workflow(images))
        result = asyncio.run(executor.run(graph, inputs))
    except WorkflowError as e:
        logger.error("Workflow aborted (%s): %s", e.kind.value, e.message)
        return 1

    for name, run_result in result.results.items():
        if not run_result.succeeded:
            logger.error(
                "%s: %s after %d attempt(s): %s",
                name,
                run_result.error_kind.value,
                run_result.attempts,
                run_result.error,
            )
    for key, artifacts in result.outputs.items():
        for artifact in artifacts:
            print(f"{key}\t{artifact.path}")
    return 0 if result.succeeded else 1


if __name__ == "__main__":
    sys.exit(main())
