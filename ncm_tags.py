#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""把 NCM 元数据里的 标题/艺人/专辑 写进解码后的音频"""

import logging
from pathlib import Path

from mutagen import MutagenError
from mutagen.flac import FLAC
from mutagen.mp3 import EasyMP3

from ncm_decoder import Music

log = logging.getLogger("ncm_tags")


def write_tags(audio_path, music: Music) -> bool:
    audio_path = Path(audio_path)
    ext = audio_path.suffix.lower()
    try:
        if ext == ".flac":
            audio = FLAC(str(audio_path))
        elif ext == ".mp3":
            audio = EasyMP3(str(audio_path))
            if audio.tags is None:
                audio.add_tags()
        else:
            log.warning(f"格式 {ext} 不支持写标签: {audio_path.name}")
            return False

        audio["title"] = music.music_name
        if music.artist_names:
            audio["artist"] = music.artist_names
        if music.album:
            audio["album"] = music.album
        audio.save()
    except MutagenError as e:
        # 写标签失败不影响解码结果
        log.warning(f"⚠️ 写标签失败 {audio_path.name}: {e}")
        return False

    log.debug(f'写入：artist="{", ".join(music.artist_names)}", title="{music.music_name}"')
    return True
