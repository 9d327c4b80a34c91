#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""查看 .ncm 文件里的元数据"""

import sys
import json
import logging
from dataclasses import asdict

from ncm_decoder import NCMError, read_ncm_meta

log = logging.getLogger("check_ncm_meta")


def print_meta(filepath, meta):
    print(f"文件: {filepath}")
    if meta is None:
        print("（没有元数据）")
    else:
        print(f"元数据格式: {meta.format}")
        print(f"比特率: {meta.bitrate}")
        print(f"音乐名: {meta.music_name}")
        print(f"艺人: {' / '.join(meta.artist_names)}")
        print(f"专辑: {meta.album}")
        print(f"时长: {meta.duration / 1000:.1f} 秒")
    print("-" * 40)


def main(argv=None) -> int:
    import argparse

    ap = argparse.ArgumentParser(description="查看 NCM 元数据")
    ap.add_argument("files", nargs="+", help=".ncm 文件")
    ap.add_argument("--json", action="store_true", help="以 JSON 输出")
    args = ap.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    failed = 0
    dumped = {}
    for f in args.files:
        try:
            meta = read_ncm_meta(f)
        except NCMError as e:
            failed += 1
            log.error(f"{e.kind}: {e}")
            continue
        if args.json:
            dumped[f] = asdict(meta) if meta else None
        else:
            print_meta(f, meta)

    if args.json:
        print(json.dumps(dumped, ensure_ascii=False, indent=2))
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
