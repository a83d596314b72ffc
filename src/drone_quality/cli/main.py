"""命令行入口。"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)
from rich.table import Table

from drone_quality.analysis.scoring import format_quality_report
from drone_quality.compute.dispatcher import ComputeDispatcher
from drone_quality.core.config import (
    AnalysisConfig,
    BlurConfig,
    ComputeConfig,
    MultiScaleCombine,
    SceneType,
    UseCase,
)
from drone_quality.core.exceptions import ConfigurationError
from drone_quality.core.models import BatchResult
from drone_quality.core.progress import ProcessingProgress
from drone_quality.core.report import summarize
from drone_quality.core.scanner import collect_image_paths, load_source_images
from drone_quality.processing.pipeline import process_batch
from drone_quality.utils.logging import setup_logging

app = typer.Typer(help="无人机航拍图像质量分析工具。")
console = Console()


@app.callback()
def main() -> None:
    """无人机航拍图像质量分析工具。"""


def _build_progress_callback(progress: Progress):
    task_id: Optional[int] = None

    def callback(update: ProcessingProgress) -> None:
        nonlocal task_id
        if update.total == 0:
            return
        if task_id is None:
            task_id = progress.add_task("分析图片", total=update.total)
        description = f"{update.current_step.value} {update.current_image_name or ''}".strip()
        progress.update(task_id, completed=update.current, total=update.total, description=description)

    return callback


def _render_summary(result: BatchResult) -> Table:
    table = Table(title="图像质量分析结果")
    table.add_column("文件")
    table.add_column("综合", justify="right")
    table.add_column("等级")
    table.add_column("置信度", justify="right")
    table.add_column("清晰度", justify="right")
    table.add_column("曝光", justify="right")
    table.add_column("噪声", justify="right")
    table.add_column("特征点", justify="right")
    table.add_column("备注")

    for analysis in result.analyses:
        score = analysis.composite_score
        if analysis.error or score is None:
            table.add_row(analysis.name, "-", "-", "-", "-", "-", "-", "-", analysis.error or "未评分")
            continue
        note = f"{len(analysis.warnings)} 个警告" if analysis.warnings else ""
        table.add_row(
            analysis.name,
            str(score.overall),
            score.recommendation.value,
            f"{score.confidence}%",
            f"{score.blur:.0f}",
            f"{score.exposure:.0f}",
            f"{score.noise:.0f}",
            f"{score.descriptor:.0f}",
            note,
        )
    return table


@app.command("analyze")
def analyze_cli(  # noqa: PLR0913
    source: List[Path] = typer.Argument(..., help="图片文件或目录，可指定多个"),
    use_case: UseCase = typer.Option(UseCase.GENERAL, "--use-case", help="评分用途 general/photogrammetric"),
    scene_type: SceneType = typer.Option(SceneType.MIXED, "--scene", help="场景类型 mixed/aerial_sky/ground_detail"),
    max_workers: int = typer.Option(4, "--workers", "-w", help="并发工作线程数量"),
    allow_recursive: bool = typer.Option(True, "--recursive/--no-recursive", help="是否递归扫描目录"),
    multi_scale: bool = typer.Option(False, "--multi-scale", help="清晰度使用多尺度分析"),
    combine: MultiScaleCombine = typer.Option(MultiScaleCombine.MEAN, "--combine", help="多尺度合并方式 mean/min"),
    enable_gpu: bool = typer.Option(True, "--gpu/--no-gpu", help="是否尝试使用 OpenCL 加速"),
    show_report: bool = typer.Option(False, "--report", help="逐张输出文字报告与建议"),
    json_output: Optional[Path] = typer.Option(None, "--json", help="把分析结果写入 JSON 文件"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="输出调试日志"),
) -> None:
    """分析图片质量并输出汇总。"""

    setup_logging(logging.DEBUG if verbose else logging.INFO)
    logging.getLogger(__name__).debug("CLI 参数解析完成")

    config = AnalysisConfig(
        blur=BlurConfig(multi_scale=multi_scale, combine=combine),
        compute=ComputeConfig(enable_gpu=enable_gpu),
        use_case=use_case,
        scene_type=scene_type,
        max_workers=max_workers,
    )
    try:
        config.validate()
    except ConfigurationError as exc:
        raise typer.BadParameter(str(exc)) from exc

    paths = collect_image_paths([p.expanduser() for p in source], recursive=allow_recursive)
    images = load_source_images(paths)
    if not images:
        typer.echo("没有找到可分析的图片。")
        raise typer.Exit(code=1)

    progress = Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        TimeElapsedColumn(),
        TimeRemainingColumn(),
        console=console,
    )

    dispatcher = ComputeDispatcher(config.compute)
    try:
        with progress:
            result = process_batch(
                images,
                config,
                progress_callback=_build_progress_callback(progress),
                dispatcher=dispatcher,
            )
        stats = dispatcher.performance_stats()
    finally:
        dispatcher.close()

    console.print(_render_summary(result))
    if show_report:
        for analysis in result.analyses:
            console.print(format_quality_report(analysis))
            console.print()

    summary = summarize(result.analyses)
    average = f"{summary.average_overall:.1f}" if summary.average_overall is not None else "-"
    typer.echo(f"分析完成：成功 {summary.succeeded} 张，失败 {summary.failed} 张，平均综合分 {average}。")
    typer.echo(
        f"计算调度：GPU {stats.gpu_dispatches} 次，CPU {stats.cpu_dispatches} 次，回退 {stats.fallbacks} 次。"
    )

    if json_output is not None:
        payload = [analysis.to_snapshot() for analysis in result.analyses]
        json_output.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        typer.echo(f"结果文件：{json_output}")


if __name__ == "__main__":
    app()
