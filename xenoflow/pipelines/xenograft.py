"""Xenograft contaminant removal.

Reads from a xenograft sample are re-aligned to a chimeric reference holding
both the graft (e.g. human) and host (e.g. mouse) genomes. Host contigs carry
a recognisable name tag, so reads whose alignment lands on a tagged contig
are dropped and the remainder summarised:

    input_bam ─┬─ extract_header
               └─ sort_by_queryname ─ split_fastq ─ align_to_chimeric_reference
                  ─ sort_by_coordinate ─ filter_by_origin ─ summarize

Every step is an external tool; the engine only threads files between them.
"""

import os
from dataclasses import dataclass

from xenoflow import config
from xenoflow.core.resources import ImageMinimum
from xenoflow.core.tasks import (
    ArtifactRef,
    DiskFormula,
    InputDecl,
    InputFile,
    OutputDecl,
    ResourceProfile,
    TaskSpec,
    WorkflowDefinition,
    WorkflowInputs,
)

BWA_INDEX_SUFFIXES = ("amb", "ann", "bwt", "pac", "sa")

REFERENCE_INPUTS = ("reference_fasta", "reference_fai") + tuple(
    f"reference_{suffix}" for suffix in BWA_INDEX_SUFFIXES
)

SUMMARY_OUTPUT = ArtifactRef(producer="summarize", output="report")


@dataclass(frozen=True)
class PipelineImages:
    samtools: str
    bwa: str

    @classmethod
    def from_config(cls) -> "PipelineImages":
        return cls(samtools=config.SAMTOOLS_IMAGE, bwa=config.BWA_IMAGE)


def image_minimums(images: PipelineImages) -> dict[str, ImageMinimum]:
    # Holding both genomes' BWA index in memory needs roughly 10 GB.
    return {
        images.samtools: ImageMinimum(cpu=1, memory_gb=1.0),
        images.bwa: ImageMinimum(cpu=1, memory_gb=10.0),
    }


def _input(name: str, source: str) -> InputDecl:
    return InputDecl(name=name, ref=ArtifactRef.parse(source))


def _link_reference() -> str:
    links = ["ln -s {inputs[fasta]} ref.fa", "ln -s {inputs[fai]} ref.fa.fai"]
    links += [f"ln -s {{inputs[{s}]}} ref.fa.{s}" for s in BWA_INDEX_SUFFIXES]
    return " && ".join(links)


def build_xenograft_workflow(
    images: PipelineImages | None = None,
    preemptible_retries: int = 3,
    workflow_id: str = "xenograft_contaminant_removal",
) -> WorkflowDefinition:
    images = images or PipelineImages.from_config()

    extract_header = TaskSpec(
        name="extract_header",
        command="samtools view -H {inputs[bam]} > {outputs[header]}",
        inputs=[_input("bam", "input_bam")],
        outputs=[OutputDecl(name="header", path="header.sam")],
        resources=ResourceProfile(
            cpu=1,
            memory_gb=2.0,
            disk=DiskFormula(base_offset=5, multiplier=1.0),
            image=images.samtools,
        ),
        preemptible=True,
        max_retries=preemptible_retries,
    )

    # Query-name sorting spills uncompressed records, hence the large multiplier.
    sort_by_queryname = TaskSpec(
        name="sort_by_queryname",
        command=(
            "samtools sort -n -@ {cpu} -o {outputs[bam]} {inputs[bam]}"
        ),
        inputs=[_input("bam", "input_bam")],
        outputs=[OutputDecl(name="bam", path="queryname_sorted.bam")],
        resources=ResourceProfile(
            cpu=4,
            memory_gb=8.0,
            disk=DiskFormula(base_offset=20, multiplier=6.0),
            image=images.samtools,
        ),
        preemptible=True,
        max_retries=preemptible_retries,
    )

    split_fastq = TaskSpec(
        name="split_fastq",
        command=(
            "samtools fastq -n -@ {cpu} -0 /dev/null -s /dev/null "
            "-1 reads_1.fastq.gz -2 reads_2.fastq.gz {inputs[bam]}"
        ),
        inputs=[_input("bam", "sort_by_queryname.bam")],
        outputs=[OutputDecl(name="reads", pattern="reads_*.fastq.gz")],
        resources=ResourceProfile(
            cpu=2,
            memory_gb=4.0,
            disk=DiskFormula(base_offset=10, multiplier=4.0),
            image=images.samtools,
        ),
        preemptible=True,
        max_retries=preemptible_retries,
    )

    align = TaskSpec(
        name="align_to_chimeric_reference",
        command=(
            _link_reference()
            + " && bwa mem -t {cpu} "
            "-R '@RG\\tID:{params[read_group_id]}\\tSM:{params[sample_name]}"
            "\\tPL:{params[platform]}\\tPU:{params[platform_unit]}' "
            "ref.fa {inputs[reads][0]} {inputs[reads][1]} > {outputs[sam]}"
        ),
        inputs=[
            _input("reads", "split_fastq.reads"),
            _input("fasta", "reference_fasta"),
            _input("fai", "reference_fai"),
        ]
        + [_input(s, f"reference_{s}") for s in BWA_INDEX_SUFFIXES],
        outputs=[OutputDecl(name="sam", path="aligned.sam")],
        resources=ResourceProfile(
            cpu=8,
            memory_gb=16.0,
            disk=DiskFormula(base_offset=20, multiplier=3.0),
            image=images.bwa,
        ),
        preemptible=True,
        max_retries=preemptible_retries,
    )

    sort_by_coordinate = TaskSpec(
        name="sort_by_coordinate",
        command=(
            "samtools sort -@ {cpu} -o {outputs[bam]} {inputs[sam]} "
            "&& samtools index {outputs[bam]} {outputs[bai]}"
        ),
        inputs=[_input("sam", "align_to_chimeric_reference.sam")],
        outputs=[
            OutputDecl(name="bam", path="coordinate_sorted.bam"),
            OutputDecl(name="bai", path="coordinate_sorted.bam.bai"),
        ],
        resources=ResourceProfile(
            cpu=4,
            memory_gb=8.0,
            disk=DiskFormula(base_offset=10, multiplier=2.0),
            image=images.samtools,
        ),
        preemptible=True,
        max_retries=preemptible_retries,
    )

    # Keeps headers and every read whose reference or mate reference name does
    # not contain the host tag; unmapped reads ("*") are kept.
    filter_by_origin = TaskSpec(
        name="filter_by_origin",
        command=(
            "samtools view -h {inputs[bam]} "
            "| awk -v tag='{params[contaminant_tag]}' "
            "'/^@/ || (index($3, tag) == 0 && index($7, tag) == 0)' "
            "| samtools view -b -o {outputs[bam]} -"
        ),
        inputs=[
            _input("bam", "sort_by_coordinate.bam"),
            _input("bai", "sort_by_coordinate.bai"),
        ],
        outputs=[OutputDecl(name="bam", path="graft_only.bam")],
        resources=ResourceProfile(
            cpu=2,
            memory_gb=4.0,
            disk=DiskFormula(base_offset=10, multiplier=2.0),
            image=images.samtools,
        ),
        preemptible=True,
        max_retries=preemptible_retries,
    )

    summarize = TaskSpec(
        name="summarize",
        command="samtools flagstat {inputs[bam]} > {outputs[report]}",
        inputs=[_input("bam", "filter_by_origin.bam")],
        outputs=[OutputDecl(name="report", path="flagstat.txt")],
        resources=ResourceProfile(
            cpu=1,
            memory_gb=2.0,
            disk=DiskFormula(base_offset=5, multiplier=1.0),
            image=images.samtools,
        ),
        preemptible=True,
        max_retries=preemptible_retries,
    )

    return WorkflowDefinition(
        id=workflow_id,
        inputs=["input_bam", *REFERENCE_INPUTS],
        tasks=[
            extract_header,
            sort_by_queryname,
            split_fastq,
            align,
            sort_by_coordinate,
            filter_by_origin,
            summarize,
        ],
        outputs=[SUMMARY_OUTPUT],
    )


def xenograft_params(
    sample_id: str,
    read_group_id: str,
    platform_unit: str,
    sample_name: str,
    platform: str = "ILLUMINA",
    contaminant_tag: str = "mm10_",
) -> dict[str, str]:
    return {
        "sample_id": sample_id,
        "read_group_id": read_group_id,
        "platform_unit": platform_unit,
        "sample_name": sample_name,
        "platform": platform,
        "contaminant_tag": contaminant_tag,
    }


def xenograft_inputs(
    input_bam: str, reference_fasta: str, params: dict[str, str]
) -> WorkflowInputs:
    """Stat the sample and reference files; index files sit next to the FASTA."""
    paths = {
        "input_bam": input_bam,
        "reference_fasta": reference_fasta,
        "reference_fai": f"{reference_fasta}.fai",
    }
    for suffix in BWA_INDEX_SUFFIXES:
        paths[f"reference_{suffix}"] = f"{reference_fasta}.{suffix}"

    files = {}
    for name, path in paths.items():
        path = os.path.abspath(path)
        files[name] = InputFile(path=path, size_bytes=os.path.getsize(path))
    return WorkflowInputs(files=files, params=params)
