# vmhost/utils/file_utils.py
import gzip
import os
import shutil
from typing import Optional

COPY_CHUNK_SIZE = 4 * 1024 * 1024


def stream_copy(src: str, dst: str, compress: bool = False, decompress: bool = False):
    """
    src를 dst로 스트리밍 복사합니다.

    임시 파일(dst.part)에 끝까지 쓴 뒤 이름을 바꿔 dst를 교체하므로, 중간에 실패하거나
    프로세스가 죽어도 dst는 이전 내용이거나 새 내용 중 하나입니다.
    """
    tmp_path = f"{dst}.part"
    opener = gzip.open if decompress else open
    writer = gzip.open if compress else open
    try:
        with opener(src, "rb") as fin, writer(tmp_path, "wb") as fout:
            shutil.copyfileobj(fin, fout, COPY_CHUNK_SIZE)
        os.replace(tmp_path, dst)
    except BaseException:
        remove_quietly(tmp_path)
        raise


def remove_quietly(path: Optional[str]):
    if not path:
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
