"""Async functional registry operations."""

from typing import Any

from .core.registry_client import RegistryClient
from .core.types import RegistryConfig
from .exceptions import ScannerError
from .models import ImageReference, VulnerabilityReport
from .scanners import select_scanner
from .utils.digest import validate_digest
from .utils.reference import parse_image


async def list_repositories(registry_url: str, timeout: int = 10) -> list[str]:
    """레지스트리의 모든 저장소 목록을 조회합니다.

    Link 헤더의 다음 페이지를 끝까지 따라가며 모든 페이지를 합쳐 반환합니다.

    Args:
        registry_url: 레지스트리 URL (예: "http://localhost:15000")
        timeout: 요청 타임아웃 (초, 기본값: 10초)

    Returns:
        list[str]: 저장소 이름 목록 (예: ["nginx", "myapp", "test/image"])

    Raises:
        RegistryError: 요청 실패 시

    Examples:
        repos = await list_repositories("http://localhost:15000")
        print(f"발견된 저장소: {repos}")
    """
    config = RegistryConfig(url=registry_url, timeout=timeout)
    async with RegistryClient(config) as client:
        return await client.catalog()


async def list_tags(registry_url: str, repository: str, timeout: int = 10) -> list[str]:
    """특정 저장소의 모든 태그 목록을 조회합니다.

    Args:
        registry_url: 레지스트리 URL (예: "http://localhost:15000")
        repository: 저장소 이름 (예: "nginx", "mycompany/myapp")
        timeout: 요청 타임아웃 (초, 기본값: 10초)

    Returns:
        list[str]: 태그 이름 목록 (예: ["latest", "v1.0.0", "alpine"])

    Raises:
        NotFoundError: 저장소가 없을 때
        RegistryError: 요청 실패 시
    """
    config = RegistryConfig(url=registry_url, timeout=timeout)
    async with RegistryClient(config) as client:
        return await client.tags(repository)


async def get_manifest(
    registry_url: str, repository: str, tag: str, timeout: int = 10
) -> dict[str, Any]:
    """이미지의 매니페스트(schema 2)를 조회합니다.

    Args:
        registry_url: 레지스트리 URL (예: "http://localhost:15000")
        repository: 저장소 이름 (예: "nginx", "mycompany/myapp")
        tag: 태그 이름 (예: "latest", "v1.0.0")
        timeout: 요청 타임아웃 (초, 기본값: 10초)

    Returns:
        dict[str, Any]: 매니페스트 딕셔너리 (Docker Registry API v2 스키마)

    Raises:
        SchemaMismatchError: 레지스트리가 다른 스키마 버전을 반환했을 때
        RegistryError: 요청 실패 시

    Examples:
        manifest = await get_manifest("http://localhost:15000", "nginx", "latest")
        print(f"스키마 버전: {manifest['schemaVersion']}")
    """
    config = RegistryConfig(url=registry_url, timeout=timeout)
    async with RegistryClient(config) as client:
        return (await client.manifest_v2(repository, tag)).data


async def get_digest(registry_url: str, image: str, timeout: int = 10) -> str:
    """이미지의 매니페스트 digest를 조회합니다.

    Docker-Content-Digest 헤더를 GET, HEAD 순서로 확인하고, 둘 다 없으면
    매니페스트 본문으로 직접 계산합니다.

    Args:
        registry_url: 레지스트리 URL
        image: 이미지 이름 (예: "nginx:alpine", "team/app@sha256:...")
        timeout: 요청 타임아웃 (초, 기본값: 10초)

    Returns:
        str: "sha256:..." 형식의 digest
    """
    ref = parse_image(image)
    config = RegistryConfig(url=registry_url, timeout=timeout)
    async with RegistryClient(config) as client:
        return await client.digest(ref)


async def delete_image(
    registry_url: str, repository: str, tag: str, timeout: int = 10
) -> bool:
    """레지스트리에서 이미지를 삭제합니다.

    태그를 먼저 digest로 변환한 뒤 삭제합니다. 이미 없는 이미지(404)도
    성공으로 처리합니다.

    Args:
        registry_url: 레지스트리 URL (예: "http://localhost:15000")
        repository: 저장소 이름 (예: "nginx", "mycompany/myapp")
        tag: 태그 이름 또는 digest
        timeout: 요청 타임아웃 (초, 기본값: 10초)

    Returns:
        bool: 삭제 성공 시 True

    Raises:
        RegistryError: 삭제 실패 시

    Note:
        레지스트리에서 REGISTRY_STORAGE_DELETE_ENABLED=true 설정이 필요합니다.
    """
    config = RegistryConfig(url=registry_url, timeout=timeout)
    async with RegistryClient(config) as client:
        ref = ImageReference(client.domain, repository, tag=tag)
        if validate_digest(tag):
            ref = ref.with_digest(tag)
        digest = await client.digest(ref)
        await client.delete(repository, digest)
    return True


async def scan_image(
    registry_url: str,
    repository: str,
    tag: str,
    clair_url: str = "",
    trivy_location: str = "",
    timeout: int = 60,
) -> VulnerabilityReport:
    """이미지의 취약점 리포트를 생성합니다.

    trivy 경로가 주어지면 trivy를, 아니면 Clair를 사용합니다.

    Args:
        registry_url: 레지스트리 URL
        repository: 저장소 이름
        tag: 태그 이름
        clair_url: Clair 서버 URL
        trivy_location: trivy 실행 파일 경로
        timeout: 요청 타임아웃 (초, 기본값: 60초)

    Returns:
        VulnerabilityReport: 심각도별로 분류된 취약점 리포트

    Raises:
        ScannerError: 스캐너가 설정되지 않았거나 스캔 실패 시
    """
    scanner = select_scanner(trivy_location, clair_url, timeout=timeout)
    if scanner is None:
        raise ScannerError("pass a clair url or a trivy location")

    config = RegistryConfig(url=registry_url, timeout=timeout)
    async with scanner, RegistryClient(config) as client:
        return await scanner.scan_image(client, repository, tag)
