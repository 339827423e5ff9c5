"""Parsing of ``repository:tag`` and ``repository@digest`` references."""


def parse_reference(reference: str) -> tuple[str, str]:
    """저장소 참조 문자열을 저장소와 태그(또는 digest) 구성요소로 파싱합니다.

    Args:
        reference: 저장소 참조 문자열
            - 예: "nginx:alpine", "localhost:5000/myapp:latest"
            - digest 참조: "myapp@sha256:abc123..."

    Returns:
        tuple[str, str]: (저장소, 태그 또는 digest) 튜플

    Examples:
        # 기본 이미지 태그 파싱
        repo, tag = parse_reference("nginx:alpine")
        # 결과: ("nginx", "alpine")

        # 레지스트리 포트가 포함된 경우
        repo, tag = parse_reference("localhost:5000/myapp")
        # 결과: ("localhost:5000/myapp", "latest")

        # digest 참조
        repo, digest = parse_reference("myapp@sha256:abc123")
        # 결과: ("myapp", "sha256:abc123")
    """
    if "@" in reference:
        repository, digest = reference.split("@", 1)
        return repository, digest

    # a colon before the last '/' belongs to a registry host, not a tag
    slash = reference.rfind("/")
    colon = reference.rfind(":")
    if colon > slash:
        repository, tag = reference[:colon], reference[colon + 1 :]
        return repository, tag or "latest"

    # No tag specified, use default
    return reference, "latest"
