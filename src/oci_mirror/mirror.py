"""Async functional style mirror operations against a registry."""

import contextlib
import logging
from pathlib import Path
from typing import Optional, Sequence, Union

from .core.registry_client import RegistryClient
from .core.storage import GraphSource
from .core.types import (
    BlockBufferOptions,
    DeserializeOptions,
    ResumeFromLedger,
    SerializeOptions,
)
from .operations.batch import (
    BatchItem,
    BatchResult,
    DeserializeItem,
    DeserializeResult,
    batch_deserialize,
    batch_serialize,
)
from .operations.deserialize import deserialize
from .operations.serialize import archive_extension, serialize
from .utils.reference import parse_reference

logger = logging.getLogger(__name__)


class _Repositories:
    """Opens one registry client per repository and closes them together."""

    def __init__(self, registry_url: str, timeout: int) -> None:
        self.registry_url = registry_url
        self.timeout = timeout
        self._clients: dict[str, RegistryClient] = {}
        self._stack = contextlib.AsyncExitStack()

    async def __aenter__(self) -> "_Repositories":
        await self._stack.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self._stack.__aexit__(exc_type, exc_val, exc_tb)

    async def get(self, repository: str) -> RegistryClient:
        if repository not in self._clients:
            client = RegistryClient(self.registry_url, repository, timeout=self.timeout)
            self._clients[repository] = await self._stack.enter_async_context(client)
        return self._clients[repository]

    async def for_reference(self, reference: str) -> GraphSource:
        repository, _ = parse_reference(reference)
        return await self.get(repository)


async def serialize_image(
    registry_url: str,
    reference: str,
    dest_path: Union[str, Path],
    checkpoint_path: Optional[Union[str, Path]] = None,
    compression: Optional[str] = None,
    existing_images: Optional[Sequence[str]] = None,
    resume_from: Optional[Sequence[tuple[Union[str, Path], int]]] = None,
    recursive: bool = False,
    buffer_blocks: int = 0,
    block_size: int = 10240,
    timeout: int = 300,
) -> str:
    """레지스트리의 이미지와 그것이 참조하는 모든 콘텐츠를 아카이브로 직렬화합니다.

    아카이브는 추가 전용으로 열리므로 테이프 장치에도 기록할 수 있습니다.
    checkpoint_path를 지정하면 기록된 각 blob과 아카이브 오프셋이 원장(ledger)에
    남아, 중단된 전송을 이어서 진행할 수 있습니다.

    Args:
        registry_url: 레지스트리 URL (예: "http://localhost:15000")
        reference: 직렬화할 이미지 참조 (예: "myapp:v1", "myapp@sha256:abc...")
        dest_path: 아카이브 파일 또는 테이프 장치 경로 (예: "myapp.tar", "/dev/nst0")
        checkpoint_path: 체크포인트 원장 파일 경로 (선택사항)
        compression: 압축 방식 (None, "gzip", "zstd")
        existing_images: 대상에 이미 존재하는 이미지 참조 목록. 해당 blob은 기록하지 않음
        resume_from: 이전 실행의 (원장 경로, 매체에 기록된 바이트 수) 목록
        recursive: subject로 연결된 referrer(서명, SBOM 등)도 함께 직렬화
        buffer_blocks: 블록 버퍼 크기 (블록 수, 0이면 버퍼 사용 안 함)
        block_size: 매체에 기록하는 블록 크기 (바이트)
        timeout: 요청 타임아웃 (초, 기본값: 300초)

    Returns:
        str: 직렬화된 루트 매니페스트 digest (예: "sha256:abc123...")

    Raises:
        MirrorError: 직렬화 실패 시 (부분 아카이브는 그대로 남음)
        ContentIntegrityError: 가져온 콘텐츠의 digest 또는 크기가 일치하지 않는 경우

    Examples:
        # 기본 직렬화
        digest = await serialize_image("http://localhost:15000", "myapp:v1", "myapp.tar")

        # zstd 압축과 체크포인트 원장 사용
        await serialize_image(
            "http://localhost:15000", "myapp:v1", "myapp.tar.zst",
            checkpoint_path="myapp.ledger", compression="zstd",
        )

        # 매체에 1 GiB가 기록된 뒤 실패한 전송 재개
        await serialize_image(
            "http://localhost:15000", "myapp:v1", "myapp-2.tar",
            resume_from=[("myapp.ledger", 1 << 30)],
        )
    """
    options = SerializeOptions(
        compression=compression,
        buffer=BlockBufferOptions(buffer_blocks=buffer_blocks, block_size=block_size),
        existing_checkpoints=[
            ResumeFromLedger(Path(path), offset) for path, offset in resume_from or []
        ],
        existing_images=list(existing_images or []),
        recursive=recursive,
    )

    async with _Repositories(registry_url, timeout) as repos:
        source = await repos.for_reference(reference)
        root = await serialize(
            source,
            reference,
            dest_path,
            checkpoint_path,
            options,
            repo_func=repos.for_reference,
        )
    return root.digest


async def deserialize_archive(
    archive_path: Union[str, Path],
    registry_url: str,
    repository: str,
    tag: Optional[str] = None,
    strict: bool = False,
    block_size: int = 0,
    timeout: int = 300,
) -> str:
    """아카이브의 콘텐츠를 레지스트리 저장소로 푸시합니다.

    아카이브 항목의 순서와 관계없이, 각 매니페스트는 참조하는 모든 콘텐츠가
    대상에 존재하게 된 시점에 정확히 한 번 푸시됩니다.

    Args:
        archive_path: 아카이브 파일 또는 테이프 장치 경로 (압축 형식 자동 감지)
        registry_url: 레지스트리 URL (예: "http://localhost:15000")
        repository: 대상 저장소 이름 (예: "mirror/myapp")
        tag: 루트 인덱스에 붙일 태그 (선택사항)
        strict: True이면 아카이브 구조를 엄격하게 검사
        block_size: 매체의 블록 크기 (0이면 기본값)
        timeout: 요청 타임아웃 (초, 기본값: 300초)

    Returns:
        str: 푸시된 루트 인덱스 digest (예: "sha256:abc123...")

    Raises:
        MissingBlobsError: 아카이브에 필요한 콘텐츠가 누락된 경우 (누락된 digest 목록 포함)
        ArchiveFormatError: 아카이브 형식이 올바르지 않은 경우
        ArchiveReadError: 아카이브를 읽을 수 없는 경우

    Examples:
        # 아카이브를 저장소로 푸시
        digest = await deserialize_archive("myapp.tar", "http://localhost:15000", "mirror/myapp")

        # 태그 지정 및 엄격 모드
        await deserialize_archive(
            "myapp.tar.zst", "http://localhost:15000", "mirror/myapp",
            tag="v1", strict=True,
        )
    """
    options = DeserializeOptions(strict=strict, block_size=block_size)
    async with RegistryClient(registry_url, repository, timeout=timeout) as client:
        root = await deserialize(archive_path, client, tag, options)
    return root.digest


async def batch_serialize_images(
    registry_url: str,
    images: Sequence[str],
    output_dir: Union[str, Path],
    compression: Optional[str] = None,
    existing_images: Optional[Sequence[str]] = None,
    max_concurrency: int = 3,
    fail_fast: bool = False,
    timeout: int = 300,
) -> list[BatchResult]:
    """여러 이미지를 각각 별도의 아카이브로 동시에 직렬화합니다.

    아카이브 파일 이름은 "<순번>-<이미지 이름>.<확장자>" 형식입니다.

    Args:
        registry_url: 레지스트리 URL (예: "http://localhost:15000")
        images: 이미지 참조 목록 (예: ["nginx:alpine", "myapp:v1"])
        output_dir: 아카이브를 저장할 디렉토리
        compression: 압축 방식 (None, "gzip", "zstd")
        existing_images: 대상에 이미 존재하는 이미지 참조 목록
        max_concurrency: 동시에 직렬화할 최대 이미지 수
        fail_fast: True이면 첫 실패 시 나머지 작업을 취소하고 예외 발생
        timeout: 요청 타임아웃 (초, 기본값: 300초)

    Returns:
        list[BatchResult]: 입력 순서대로의 이미지별 결과

    Raises:
        MirrorError: fail_fast가 True이고 직렬화가 실패한 경우

    Examples:
        results = await batch_serialize_images(
            "http://localhost:15000", ["nginx:alpine", "myapp:v1"], "./sync",
        )
        for result in results:
            print(result.item.reference, result.ok)
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    extension = archive_extension(compression)

    async with _Repositories(registry_url, timeout) as repos:
        items = []
        for number, reference in enumerate(images, start=1):
            repository, _ = parse_reference(reference)
            name = repository.rsplit("/", 1)[-1]
            items.append(
                BatchItem(
                    source=await repos.for_reference(reference),
                    reference=reference,
                    dest_path=output_dir / f"{number:06d}-{name}.{extension}",
                    options=SerializeOptions(
                        compression=compression,
                        existing_images=list(existing_images or []),
                    ),
                )
            )
        results = await batch_serialize(
            items, max_concurrency, fail_fast, repo_func=repos.for_reference
        )

    failed = [r for r in results if not r.ok]
    if failed:
        logger.warning("%d of %d images failed to serialize", len(failed), len(results))
    return results


# suffixes of the archives written by batch_serialize_images
ARCHIVE_SUFFIXES = (".tar.zst", ".tar.gz", ".tar")


def archive_tag(name: str) -> Optional[str]:
    """Return the tag encoded in a batch archive name, e.g. "000001-myapp.tar" -> "myapp".

    Returns None if name is not an archive at all.

    Raises:
        ValueError: If name is an archive but not of the form "<number>-<tag>"
    """
    for suffix in ARCHIVE_SUFFIXES:
        if name.endswith(suffix):
            stem = name[: -len(suffix)]
            break
    else:
        return None

    number, sep, tag = stem.partition("-")
    if not sep or not number.isdigit() or not tag:
        raise ValueError(
            f"unexpected archive name {name}; expected <number>-<tag>, "
            "e.g. 000001-myapp.tar"
        )
    return tag


async def batch_deserialize_archives(
    archive_dir: Union[str, Path],
    registry_url: str,
    repository: str,
    sync_file: Optional[str] = "successful_syncs.jsonl",
    strict: bool = False,
    fail_fast: bool = False,
    timeout: int = 300,
) -> list[DeserializeResult]:
    """디렉토리의 모든 아카이브를 하나의 저장소로 차례대로 푸시합니다.

    batch_serialize_images가 만든 "<순번>-<이름>.<확장자>" 형식의 아카이브를
    이름 순서대로 처리하며, 각 루트 인덱스는 파일 이름의 <이름> 부분으로 태그됩니다.
    성공한 아카이브는 sync_file에 기록되어 다시 실행해도 건너뜁니다.

    Args:
        archive_dir: 아카이브가 있는 디렉토리
        registry_url: 레지스트리 URL (예: "http://localhost:15000")
        repository: 대상 저장소 이름 (예: "mirror/myapp")
        sync_file: archive_dir 안의 동기화 기록 파일 이름 (None이면 기록하지 않음)
        strict: True이면 아카이브 구조를 엄격하게 검사
        fail_fast: True이면 첫 실패 시 예외 발생
        timeout: 요청 타임아웃 (초, 기본값: 300초)

    Returns:
        list[DeserializeResult]: 아카이브 이름 순서대로의 결과 (skipped는 이전에 처리된 아카이브)

    Raises:
        ValueError: 아카이브 이름이 "<순번>-<이름>" 형식이 아닌 경우
        LedgerError: 동기화 기록 파일을 해석할 수 없는 경우
        MirrorError: fail_fast가 True이고 푸시가 실패한 경우

    Examples:
        results = await batch_deserialize_archives(
            "./sync", "http://localhost:15000", "mirror/images",
        )
        for result in results:
            print(result.item.name, result.ok, result.skipped)
    """
    archive_dir = Path(archive_dir)
    archives = []
    for path in sorted(archive_dir.iterdir()):
        if not path.is_file():
            continue
        tag = archive_tag(path.name)
        if tag is None:
            logger.debug("Ignoring %s, not an archive", path)
            continue
        archives.append((path, tag))

    options = DeserializeOptions(strict=strict)
    async with RegistryClient(registry_url, repository, timeout=timeout) as client:
        items = [DeserializeItem(path, client, tag, options) for path, tag in archives]
        results = await batch_deserialize(
            items, archive_dir / sync_file if sync_file else None, fail_fast
        )

    failed = [r for r in results if not r.ok]
    if failed:
        logger.warning("%d of %d archives failed to extract", len(failed), len(results))
    return results
