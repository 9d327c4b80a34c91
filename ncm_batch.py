#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
NCM 批量解码
扫描目录下的 .ncm 文件，用线程池并发解码，输出到指定目录
"""

import sys
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional
from concurrent.futures import ThreadPoolExecutor, as_completed

from tqdm import tqdm
from tqdm.contrib.logging import logging_redirect_tqdm

from ncm_decoder import (
    NCM_SUFFIX, DecodeContext, IoError, Music, NCMDecoder, NCMError, Stage,
)
from ncm_tags import write_tags

log = logging.getLogger("ncm_batch")

DEFAULT_OUTPUT = "music"
DEFAULT_WORKERS = 4

CONSOLE_FORMAT = "%(levelname)s: %(message)s"
FILE_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s:%(lineno)d] - %(message)s"


@dataclass
class FileOutcome:
    path: Path
    stage: Stage = Stage.PENDING
    output: Optional[Path] = None
    music: Optional[Music] = None
    error: Optional[NCMError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.stage is Stage.STREAM_DECODED


@dataclass
class BatchResult:
    output_dir: Path
    outcomes: List[FileOutcome] = field(default_factory=list)  # 按完成顺序

    @property
    def succeeded(self) -> List[FileOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failures(self) -> List[FileOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def first_failure(self) -> Optional[FileOutcome]:
        failures = self.failures
        return failures[0] if failures else None

    @property
    def ok(self) -> bool:
        return not self.failures


def prepare_output_dir(output_dir) -> Path:
    path = Path(output_dir)
    if not path.is_absolute():
        path = Path.cwd() / path
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise IoError(f"cannot create output directory: {e.strerror or e}", path) from e
    log.info(f"文件将保存至: {path}")
    return path


def find_ncm_files(input_dir) -> List[Path]:
    """只看目录下一层，不递归"""
    input_dir = Path(input_dir)
    if not input_dir.is_dir():
        raise IoError("input directory does not exist", input_dir)
    try:
        entries = sorted(input_dir.iterdir())
    except OSError as e:
        raise IoError(f"cannot list input directory: {e.strerror or e}", input_dir) from e
    return [p for p in entries if p.name.lower().endswith(NCM_SUFFIX) and p.is_file()]


def decode_one(path, output_dir, decoder: Optional[NCMDecoder] = None,
               tag: bool = False) -> FileOutcome:
    """解码单个文件，失败时把异常记录在结果里而不是抛出"""
    decoder = decoder or NCMDecoder()
    outcome = FileOutcome(Path(path))
    try:
        result = decoder.decode(path, output_dir)
    except NCMError as e:
        outcome.stage = Stage.FAILED
        outcome.error = e
        return outcome

    outcome.stage = Stage.STREAM_DECODED
    outcome.output = result.output
    outcome.music = result.music
    if tag and result.music is not None:
        write_tags(result.output, result.music)
    return outcome


def decode_batch(input_dir, output_dir=DEFAULT_OUTPUT, concurrency: int = DEFAULT_WORKERS,
                 context: Optional[DecodeContext] = None, keep_name: bool = False,
                 tag: bool = False, verify: bool = False, progress: bool = True) -> BatchResult:
    """
    批量解码 input_dir 下的 .ncm 文件。

    每个文件一个任务，某个文件失败不会影响其他文件；所有任务结束后返回。
    BatchResult.ok 表示是否全部成功，failures 里是全部失败记录。
    """
    if concurrency < 1:
        raise ValueError(f"concurrency must be at least 1, got {concurrency}")

    log.info("初始化...")
    decoder = NCMDecoder(context or DecodeContext(), keep_name=keep_name, verify=verify)
    out_dir = prepare_output_dir(output_dir)
    ncm_files = find_ncm_files(input_dir)
    log.info(f"共有{len(ncm_files)}个ncm文件")

    result = BatchResult(out_dir)
    if not ncm_files:
        return result

    with ThreadPoolExecutor(max_workers=concurrency) as executor:
        futures = [executor.submit(decode_one, p, out_dir, decoder, tag) for p in ncm_files]
        # 进度条只在当前线程更新
        with tqdm(total=len(futures), desc="decrypted", unit="file", disable=not progress) as bar:
            for future in as_completed(futures):
                outcome = future.result()
                result.outcomes.append(outcome)
                if not outcome.ok:
                    err = outcome.error
                    log.error(f"❌ {outcome.path}: {err.kind}: {err.message}")
                bar.update(1)
            bar.set_description("all done")

    failed = len(result.failures)
    log.info(f"完成: {len(ncm_files) - failed}/{len(ncm_files)} 成功")
    return result


def setup_logging(verbose: bool = False, log_file: Optional[str] = None):
    level = logging.DEBUG if verbose else logging.INFO
    if log_file:
        handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        logging.basicConfig(level=level, handlers=[handler], force=True)
    else:
        logging.basicConfig(level=level, format=CONSOLE_FORMAT, force=True)


def main(argv=None) -> int:
    import argparse

    parser = argparse.ArgumentParser(description="NCM 批量解码器")
    parser.add_argument('input', help='包含NCM文件的目录')
    parser.add_argument('-o', '--output', default=DEFAULT_OUTPUT, help='输出目录（默认 music）')
    parser.add_argument('-t', '--threads', type=int, default=DEFAULT_WORKERS, help='并发线程数（默认 4）')
    parser.add_argument('--keep-name', action='store_true', help='输出文件沿用原文件名')
    parser.add_argument('--tag', action='store_true', help='写入 标题/艺人/专辑 标签')
    parser.add_argument('--verify', action='store_true', help='检查输出文件头是否与元数据格式一致')
    parser.add_argument('--log-file', default=None, help='日志追加写入该文件')
    parser.add_argument('--no-progress', action='store_true', help='不显示进度条')
    parser.add_argument('-v', '--verbose', action='store_true', help='输出调试日志')

    args = parser.parse_args(argv)
    if args.threads < 1:
        parser.error("--threads must be at least 1")

    setup_logging(args.verbose, args.log_file)

    try:
        with logging_redirect_tqdm():
            result = decode_batch(
                args.input, args.output, args.threads,
                keep_name=args.keep_name, tag=args.tag, verify=args.verify,
                progress=not args.no_progress,
            )
    except NCMError as e:
        log.error(f"❌ {e}")
        return 1

    if not result.ok:
        first = result.first_failure
        log.error(f"失败 {len(result.failures)} 个，首个: {first.path.name} ({first.error.kind})")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
