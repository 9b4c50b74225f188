"""Async functional export operations."""

from pathlib import Path
from typing import BinaryIO, Optional, Union

from .core.config import ExportConfig
from .models import ImageConfig
from .operations.jobs import AuthPayload, ExportJob, ExportOptions


async def get_image_config(
    reference: str, auth: AuthPayload = None, *, config: Optional[ExportConfig] = None
) -> str:
    """이미지의 설정(config) JSON을 원본 그대로 조회합니다.

    레이어는 다운로드하지 않습니다.

    Args:
        reference: 이미지 참조 (예: "alpine:3.19", "ghcr.io/org/app@sha256:...")
        auth: 인증 정보 (JSON 문자열 또는 dict, 없으면 익명/기본 자격 증명)
        config: 내보내기 설정 (기본값: 환경 변수 기반 설정)

    Returns:
        str: 설정 JSON 텍스트

    Raises:
        ImageExportError: 조회 실패 시 (kind 속성으로 원인 구분)

    Examples:
        # 공개 이미지의 설정 조회
        config_json = await get_image_config("alpine:latest")
        print(json.loads(config_json)["config"]["Cmd"])
    """
    job = ExportJob(reference, auth, config=config or ExportConfig.from_env())
    return await job.get_config_text()


async def get_image_summary(
    reference: str, auth: AuthPayload = None, *, config: Optional[ExportConfig] = None
) -> ImageConfig:
    """이미지 설정을 요약 모델로 조회합니다.

    Args:
        reference: 이미지 참조 (예: "nginx:1.25")
        auth: 인증 정보 (JSON 문자열 또는 dict)
        config: 내보내기 설정

    Returns:
        ImageConfig: 아키텍처, 엔트리포인트, 환경 변수 등 요약 정보

    Examples:
        summary = await get_image_summary("nginx:1.25")
        print(f"엔트리포인트: {summary.entrypoint}")
    """
    job = ExportJob(reference, auth, config=config or ExportConfig.from_env())
    return ImageConfig.from_config_blob(await job.get_config())


async def export_filesystem(
    reference: str,
    output_path: Union[str, Path],
    auth: AuthPayload = None,
    *,
    config: Optional[ExportConfig] = None,
) -> Path:
    """이미지의 파일시스템을 하나의 tar 파일로 내보냅니다.

    모든 레이어를 아래에서 위 순서로 병합하며 whiteout 규칙을 적용합니다.

    Args:
        reference: 이미지 참조 (예: "alpine:latest")
        output_path: 출력 tar 파일 경로
        auth: 인증 정보 (JSON 문자열 또는 dict)
        config: 내보내기 설정

    Returns:
        Path: 기록된 파일 경로

    Raises:
        ImageExportError: 내보내기 실패 시

    Examples:
        path = await export_filesystem("alpine:latest", "rootfs.tar")
        print(f"저장 위치: {path}")
    """
    return await export_filesystem_with_options(reference, output_path, auth, config=config)


async def export_filesystem_with_options(
    reference: str,
    output_path: Union[str, Path],
    auth: AuthPayload = None,
    options: Optional[ExportOptions] = None,
    *,
    config: Optional[ExportConfig] = None,
) -> Path:
    """압축, 진행률, 취소 옵션과 함께 파일시스템을 내보냅니다.

    Args:
        reference: 이미지 참조
        output_path: 출력 경로 (압축 시 ".gz" 확장자가 없으면 추가됨)
        auth: 인증 정보 (JSON 문자열 또는 dict)
        options: 압축 여부, 진행률 콜백/싱크, 취소 토큰
        config: 내보내기 설정

    Returns:
        Path: 실제로 기록된 파일 경로 (확장자 포함)

    Raises:
        ImageExportError: 내보내기 실패 시

    Examples:
        def on_progress(current, total, description):
            print(f"[{current}/{total}] {description}")

        path = await export_filesystem_with_options(
            "alpine:latest",
            "rootfs.tar",
            options=ExportOptions(compress=True, progress=on_progress),
        )
        # path == Path("rootfs.tar.gz")
    """
    job = ExportJob(reference, auth, options, config or ExportConfig.from_env())
    return await job.export_to_path(output_path)


async def export_filesystem_to_writer(
    reference: str,
    writer: BinaryIO,
    auth: AuthPayload = None,
    options: Optional[ExportOptions] = None,
    *,
    config: Optional[ExportConfig] = None,
) -> int:
    """열려 있는 바이너리 스트림으로 파일시스템을 내보냅니다.

    Args:
        reference: 이미지 참조
        writer: 쓰기 가능한 바이너리 파일 객체 (호출자가 닫음)
        auth: 인증 정보
        options: 압축 여부, 진행률, 취소 토큰
        config: 내보내기 설정

    Returns:
        int: 스트림에 기록된 바이트 수

    Examples:
        with open("rootfs.tar", "wb") as fh:
            size = await export_filesystem_to_writer("alpine:latest", fh)
    """
    job = ExportJob(reference, auth, options, config or ExportConfig.from_env())
    return await job.export_to_writer(writer)
