from __future__ import annotations


def _split_version(version: str) -> tuple[tuple[int, ...], tuple[str, ...] | None]:
    raw = version.strip().lstrip("vV")
    if not raw:
        raise ValueError("empty version")
    raw = raw.split("+", 1)[0]  # build metadata does not affect ordering
    main_s, sep, pre_s = raw.partition("-")
    pre_parts = tuple(p for p in pre_s.split(".") if p) if sep else None
    main_parts = main_s.split(".")
    if any(not p.isdigit() for p in main_parts):
        raise ValueError(f"Unsupported version format: {version!r}")
    nums = [int(p) for p in main_parts]
    while len(nums) < 3:
        nums.append(0)
    return tuple(nums), pre_parts


def _compare_prerelease(pa: tuple[str, ...], pb: tuple[str, ...]) -> int:
    for x, y in zip(pa, pb):
        if x == y:
            continue
        if x.isdigit() and y.isdigit():
            return -1 if int(x) < int(y) else 1
        if x.isdigit():
            return -1
        if y.isdigit():
            return 1
        return -1 if x < y else 1
    return (len(pa) > len(pb)) - (len(pa) < len(pb))


def compare_versions(a: str, b: str) -> int:
    """Semantic-version ordering; non-semver strings fall back to plain string order."""
    try:
        ma, pa = _split_version(a)
        mb, pb = _split_version(b)
    except ValueError:
        return (a > b) - (a < b)
    if ma != mb:
        return -1 if ma < mb else 1
    if pa is None and pb is None:
        return 0
    if pa is None:
        return 1
    if pb is None:
        return -1
    return _compare_prerelease(pa, pb)


def is_valid_version(version: str) -> bool:
    try:
        _split_version(version)
    except ValueError:
        return False
    return True
