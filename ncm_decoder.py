#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
NCM 容器解码核心

容器布局（整数均为小端）：
    magic(8) | version(2) | key_block | meta_block | gap(9) | cover_block | audio

    key_block   u32 长度 + 数据，异或 0x64 后 AES-128-ECB/PKCS7 解密，去掉 17 字节前缀
    meta_block  u32 长度 + 数据，异或 0x63，跳过 22 字节，base64，AES 解密，去掉 6 字节前缀，JSON
    cover_block u32 长度 + 图片数据（直接跳过）
    audio       以密钥盒生成的密钥流逐字节异或
"""

import os
import re
import json
import base64
import struct
import binascii
import logging
from enum import Enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, List, Optional

from Crypto.Cipher import AES
from Crypto.Util.Padding import unpad
from Crypto.Util.strxor import strxor

log = logging.getLogger("ncm_decoder")

MAGIC = binascii.a2b_hex('4354454e4644414d')
CORE_KEY = binascii.a2b_hex('687A4852416D736F356B496E62617857')
META_KEY = binascii.a2b_hex('2331346C6A6B5F215C5D2630553C2728')

KEY_XOR = 0x64
META_XOR = 0x63
KEY_PREFIX_LEN = 17      # "neteasecloudmusic"
META_PREFIX_LEN = 22     # "163 key(Don't modify):"
MUSIC_PREFIX_LEN = 6     # "music:"
VERSION_LEN = 2
GAP_LEN = 9              # crc32(4) + 未知(5)

CHUNK_SIZE = 0x8000
NCM_SUFFIX = '.ncm'
ILLEGAL_NAME_CHARS = r'[\\/:*?"<>|]'


# —— 错误类型 ——

class NCMError(Exception):
    """单个文件解码失败。path / stage 由解码流程补充。"""

    def __init__(self, message: str, path: Optional[Path] = None):
        super().__init__(message)
        self.message = message
        self.path = path
        self.stage = None

    @property
    def kind(self) -> str:
        return type(self).__name__

    def __str__(self):
        if self.path is None:
            return self.message
        return f"{self.path}: {self.message}"


class FormatError(NCMError):
    """文件头不对或某一段被截断"""


class CryptoError(NCMError):
    """AES 解密 / 填充校验失败，通常是文件损坏"""


class EncodingError(NCMError):
    """base64 无效"""


class ParseError(NCMError):
    """元数据 JSON 无法解析或缺少字段"""


class IoError(NCMError):
    """读写 / 打开文件失败"""

    @classmethod
    def from_os_error(cls, e: OSError, path):
        # 消息里带上真正出错的文件，可能是输出文件而不是 .ncm
        message = f"{e.strerror or e}"
        if e.filename is not None:
            message = f"{message}: {e.filename}"
        return cls(message, path)


class Stage(Enum):
    PENDING = "pending"
    HEADER_VALIDATED = "header validated"
    KEY_BOX_BUILT = "key box built"
    METADATA_PARSED = "metadata parsed"
    STREAM_DECODED = "stream decoded"
    FAILED = "failed"


# —— 解码配置 ——

@dataclass(frozen=True)
class DecodeContext:
    """
    整个批次共享的只读配置：两把 AES 密钥、读块大小、文件名清洗规则。
    构造一次后传给所有任务，不再修改。
    """
    core_key: bytes = CORE_KEY
    meta_key: bytes = META_KEY
    chunk_size: int = CHUNK_SIZE
    name_pattern: 're.Pattern' = field(default_factory=lambda: re.compile(ILLEGAL_NAME_CHARS))

    def __post_init__(self):
        for name in ('core_key', 'meta_key'):
            if len(getattr(self, name)) != 16:
                raise ValueError(f"{name} must be 16 bytes for AES-128")
        if self.chunk_size <= 0 or self.chunk_size % 256:
            raise ValueError(f"chunk_size must be a positive multiple of 256, got {self.chunk_size}")

    def sanitize(self, name: str) -> str:
        return self.name_pattern.sub('', name)


def aes_ecb_decrypt(data: bytes, key: bytes) -> bytes:
    """AES-128-ECB 解密并去掉 PKCS7 填充"""
    cipher = AES.new(key, AES.MODE_ECB)
    try:
        return unpad(cipher.decrypt(data), AES.block_size)
    except ValueError as e:
        raise CryptoError(f"AES decrypt failed: {e}") from e


def xor_bytes(data: bytes, value: int) -> bytes:
    buf = bytearray(data)
    for i in range(len(buf)):
        buf[i] ^= value
    return bytes(buf)


# —— 顺序读取 ——

class BinaryReader:
    """对单个容器文件的顺序读取，短读一律视为文件被截断。"""

    def __init__(self, fileobj: BinaryIO):
        self._f = fileobj
        self._size = None

    def tell(self) -> int:
        return self._f.tell()

    def size(self) -> int:
        if self._size is None:
            pos = self._f.tell()
            self._size = self._f.seek(0, os.SEEK_END)
            self._f.seek(pos)
        return self._size

    def read(self, n: int) -> bytes:
        return self._f.read(n)

    def read_exact(self, n: int, what: str) -> bytes:
        data = self._f.read(n)
        if len(data) != n:
            raise FormatError(f"truncated {what}")
        return data

    def read_u32(self, what: str) -> int:
        return struct.unpack('<I', self.read_exact(4, what))[0]

    def read_block(self, what: str) -> bytes:
        length = self.read_u32(what)
        return self.read_exact(length, what)

    def skip(self, n: int, what: str):
        # seek 越过文件末尾不会报错，需要自己检查
        if self.tell() + n > self.size():
            raise FormatError(f"truncated {what}")
        self._f.seek(n, os.SEEK_CUR)


# —— 文件头 ——

def verify_header(reader: BinaryReader):
    header = reader.read_exact(len(MAGIC), "header")
    if header != MAGIC:
        raise FormatError("bad magic")
    reader.skip(VERSION_LEN, "header")


# —— 密钥盒 ——

def build_key_box(key_data: bytes) -> bytes:
    """由密钥材料生成 0..255 的置换表（RC4 KSA 的变体）"""
    if not key_data:
        raise CryptoError("empty key material")
    key_box = bytearray(range(256))
    key_length = len(key_data)
    last_byte = 0
    key_offset = 0

    for i in range(256):
        swap = key_box[i]
        c = (swap + last_byte + key_data[key_offset]) & 0xff
        key_offset += 1
        if key_offset >= key_length:
            key_offset = 0
        key_box[i] = key_box[c]
        key_box[c] = swap
        last_byte = c

    return bytes(key_box)


def read_key_box(reader: BinaryReader, context: DecodeContext) -> bytes:
    key_data = reader.read_block("key block")
    key_data = aes_ecb_decrypt(xor_bytes(key_data, KEY_XOR), context.core_key)
    return build_key_box(key_data[KEY_PREFIX_LEN:])


# —— 元数据 ——

@dataclass
class Music:
    music_id: str
    music_name: str
    artist: List[List[str]]
    format: str
    album_id: str = ''
    album: str = ''
    album_pic_doc_id: str = ''
    album_pic: str = ''
    bitrate: int = 0
    mp3_doc_id: str = ''
    duration: int = 0
    mv_id: str = ''
    trans_names: List[str] = field(default_factory=list)
    fee: int = 0
    privilege_flag: int = 0

    @property
    def artist_names(self) -> List[str]:
        return [a[0] for a in self.artist if a]


# JSON 键 -> (属性名, 类型, 是否必需)
_ID, _STR, _INT, _ARTISTS, _STRS = 'id', 'str', 'int', 'artists', 'strs'
MUSIC_FIELDS = [
    ('musicId', 'music_id', _ID, True),
    ('musicName', 'music_name', _STR, True),
    ('artist', 'artist', _ARTISTS, True),
    ('format', 'format', _STR, True),
    ('albumId', 'album_id', _ID, False),
    ('album', 'album', _STR, False),
    ('albumPicDocId', 'album_pic_doc_id', _ID, False),
    ('albumPic', 'album_pic', _STR, False),
    ('bitrate', 'bitrate', _INT, False),
    ('mp3DocId', 'mp3_doc_id', _ID, False),
    ('duration', 'duration', _INT, False),
    ('mvId', 'mv_id', _ID, False),
    ('transNames', 'trans_names', _STRS, False),
    ('fee', 'fee', _INT, False),
]


def _is_int(v) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)


def _is_str_list(v) -> bool:
    return isinstance(v, list) and all(isinstance(s, str) for s in v)


def _convert(key: str, kind: str, value):
    if kind == _ID:
        if isinstance(value, str):
            return value
        if _is_int(value):
            return str(value)
    elif kind == _STR and isinstance(value, str):
        return value
    elif kind == _INT and _is_int(value):
        return value
    elif kind == _STRS and _is_str_list(value):
        return value
    elif kind == _ARTISTS and isinstance(value, list) and all(_is_str_list(a) for a in value):
        return value
    raise ParseError(f"metadata field {key!r} has unexpected value {value!r}")


def quote_bare_zeros(text: str) -> str:
    """
    部分文件把 id 写成裸的 0（其余地方是字符串），如 ["歌手",0]。
    直接做子串替换 ,0 -> ,"0"；字符串值里恰好含 ",0" 时会被误改。
    只补救裸 0：艺人 id 是其他整数（如 ["歌手",6452]）时仍然报 ParseError，
    而 musicId / albumId 这类字段整数也能接受。
    """
    return text.replace(',0', ',"0"')


def parse_music(text: str, quote_zeros: bool = True) -> Music:
    if quote_zeros:
        text = quote_bare_zeros(text)
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseError(f"invalid metadata JSON: {e}") from e
    if not isinstance(raw, dict):
        raise ParseError("metadata is not a JSON object")

    values = {}
    for key, attr, kind, required in MUSIC_FIELDS:
        if key not in raw:
            if required:
                raise ParseError(f"metadata field {key!r} is missing")
            continue
        values[attr] = _convert(key, kind, raw[key])

    privilege = raw.get('privilege')
    if privilege is not None:
        if not isinstance(privilege, dict) or not _is_int(privilege.get('flag', 0)):
            raise ParseError(f"metadata field 'privilege' has unexpected value {privilege!r}")
        values['privilege_flag'] = privilege.get('flag', 0)

    return Music(**values)


def decrypt_music_info(meta_data: bytes, context: DecodeContext) -> Music:
    meta_data = xor_bytes(meta_data, META_XOR)
    try:
        meta_data = base64.b64decode(meta_data[META_PREFIX_LEN:], validate=True)
    except binascii.Error as e:
        raise EncodingError(f"invalid base64 in meta block: {e}") from e
    meta_data = aes_ecb_decrypt(meta_data, context.meta_key)
    return parse_music(meta_data[MUSIC_PREFIX_LEN:].decode('utf-8', errors='replace'))


def read_music_info(reader: BinaryReader, context: DecodeContext) -> Optional[Music]:
    """读取元数据；长度为 0 的 meta 段返回 None"""
    meta_data = reader.read_block("meta block")
    if not meta_data:
        return None
    return decrypt_music_info(meta_data, context)


# —— 音频流 ——

def skip_cover(reader: BinaryReader):
    reader.skip(GAP_LEN, "gap")
    image_size = reader.read_u32("cover block")
    reader.skip(image_size, "cover block")


def keystream(key_box: bytes) -> bytes:
    """块内下标 i 对应的 256 字节密钥流（只和 i mod 256 有关）"""
    stream = bytearray(256)
    for i in range(256):
        j = (i + 1) & 0xff
        stream[i] = key_box[(key_box[j] + key_box[(key_box[j] + j) & 0xff]) & 0xff]
    return bytes(stream)


def _xor_stream(chunk: bytes, stream: bytes) -> bytes:
    n = len(chunk)
    if n > len(stream):
        stream = stream * -(-n // len(stream))
    return strxor(bytes(chunk), stream[:n])


def transform_chunk(chunk: bytes, key_box: bytes) -> bytes:
    """按块内下标对一块数据做异或，加密解密是同一个操作"""
    if not chunk:
        return b''
    return _xor_stream(chunk, keystream(key_box))


def decode_stream(src: BinaryIO, dst: BinaryIO, key_box: bytes, chunk_size: int = CHUNK_SIZE) -> int:
    """
    逐块解码剩余数据写入 dst，返回写入的字节数。

    下标按块内位置计算，所以 chunk_size 必须是 256 的倍数，
    否则块与块之间的密钥流会错位。
    """
    if chunk_size <= 0 or chunk_size % 256:
        raise ValueError(f"chunk_size must be a positive multiple of 256, got {chunk_size}")
    stream = keystream(key_box) * (chunk_size // 256)
    total = 0
    while True:
        chunk = src.read(chunk_size)
        if not chunk:
            break
        dst.write(_xor_stream(chunk, stream))
        dst.flush()
        total += len(chunk)
    return total


def detect_format(data: bytes) -> Optional[str]:
    if len(data) < 4:
        return None

    if data[:4] == b'fLaC':
        return 'flac'
    elif data[:3] == b'ID3':
        return 'mp3'
    elif data[0] == 0xff and (data[1] & 0xe0) == 0xe0:
        return 'mp3'
    elif data[:4] == b'OggS':
        return 'ogg'
    elif data[:4] == b'RIFF':
        return 'wav'
    elif len(data) > 8 and data[4:8] == b'ftyp':
        return 'm4a'

    return None


# —— 单文件流程 ——

@dataclass
class DecodeResult:
    output: Path
    music: Optional[Music]
    size: int


class NCMDecoder:
    def __init__(self, context: Optional[DecodeContext] = None, keep_name: bool = False,
                 verify: bool = False):
        self.context = context or DecodeContext()
        self.keep_name = keep_name
        self.verify = verify

    def output_name(self, ncm_path: Path, music: Optional[Music]) -> str:
        """默认 "歌手-歌名.格式"；keep_name 或没有元数据时沿用原文件名"""
        sanitize = self.context.sanitize
        audio_format = sanitize(music.format) if music else ''
        if self.keep_name or music is None:
            stem = ncm_path.stem
        elif music.artist_names:
            stem = f"{music.artist_names[0]}-{music.music_name}"
        else:
            stem = music.music_name
        stem = sanitize(stem).strip() or sanitize(ncm_path.stem)
        return f"{stem}.{audio_format or 'mp3'}"

    def decode(self, ncm_path, output_dir) -> DecodeResult:
        ncm_path = Path(ncm_path)
        output_dir = Path(output_dir)
        stage = Stage.PENDING
        try:
            with open(ncm_path, 'rb') as f:
                reader = BinaryReader(f)
                verify_header(reader)
                stage = Stage.HEADER_VALIDATED

                key_box = read_key_box(reader, self.context)
                stage = Stage.KEY_BOX_BUILT

                music = read_music_info(reader, self.context)
                if music is None:
                    log.warning(f"⚠️ {ncm_path.name} 没有元数据，按 mp3 输出")
                stage = Stage.METADATA_PARSED

                skip_cover(reader)
                output_file = output_dir / self.output_name(ncm_path, music)
                log.debug(f"{ncm_path.name}: 音频起始 0x{reader.tell():x} -> {output_file.name}")
                with open(output_file, 'wb') as out:
                    size = decode_stream(reader, out, key_box, self.context.chunk_size)
                stage = Stage.STREAM_DECODED

            if self.verify:
                self._check_output(output_file, music)
        except NCMError as e:
            e.path = ncm_path
            e.stage = stage
            raise
        except OSError as e:
            err = IoError.from_os_error(e, ncm_path)
            err.stage = stage
            raise err from e
        return DecodeResult(output_file, music, size)

    def _check_output(self, output_file: Path, music: Optional[Music]):
        with open(output_file, 'rb') as f:
            detected = detect_format(f.read(16))
        expected = music.format if music else 'mp3'
        if detected != expected:
            log.warning(f"⚠️ {output_file.name}: 文件头看起来是 {detected or '未知格式'}，元数据写的是 {expected}")


def read_ncm_meta(ncm_path, context: Optional[DecodeContext] = None) -> Optional[Music]:
    """只解出元数据，不解音频"""
    context = context or DecodeContext()
    ncm_path = Path(ncm_path)
    try:
        with open(ncm_path, 'rb') as f:
            reader = BinaryReader(f)
            verify_header(reader)
            reader.skip(reader.read_u32("key block"), "key block")
            return read_music_info(reader, context)
    except NCMError as e:
        e.path = ncm_path
        raise
    except OSError as e:
        raise IoError.from_os_error(e, ncm_path) from e
