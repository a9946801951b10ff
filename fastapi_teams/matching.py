from collections.abc import Iterable

WILDCARD = "*"
SEPARATOR = "."
WILDCARD_SUFFIX = SEPARATOR + WILDCARD


def candidate_codes(permission: str, wildcard_nodes: Iterable[str] = ()) -> list[str]:
    """Expand a permission code into the codes that would satisfy it.

    Every proper prefix of the dotted code is suffixed with '.*', and the
    exact code closes the list: 'posts.comments.edit' expands to
    ['posts.*', 'posts.comments.*', 'posts.comments.edit'].

    Args:
        permission: The required permission code.
        wildcard_nodes: Super-admin tokens prepended to the candidates
            (only passed when global wildcards are enabled).

    Returns:
        Ordered, de-duplicated list of candidate codes.
    """
    segments = permission.split(SEPARATOR)
    codes: list[str] = list(wildcard_nodes)

    for i in range(1, len(segments) + 1):
        code = SEPARATOR.join(segments[:i])
        if i < len(segments):
            code += WILDCARD_SUFFIX
        codes.append(code)

    return list(dict.fromkeys(codes))


def candidates_for_all(permissions: Iterable[str], wildcard_nodes: Iterable[str] = ()) -> list[str]:
    """Union of candidate codes for several required permissions."""
    nodes = tuple(wildcard_nodes)
    codes: list[str] = []
    for permission in permissions:
        codes.extend(candidate_codes(permission, nodes))
    return list(dict.fromkeys(codes))


def matches(held: Iterable[str], permission: str, wildcard_nodes: Iterable[str] = ()) -> bool:
    """Check if a set of held permission codes satisfies a required code.

    The test is a set intersection between the held codes and the
    candidates of the required one, so 'posts.*' satisfies 'posts.delete'
    but 'posts' alone does not.
    """
    return not set(candidate_codes(permission, wildcard_nodes)).isdisjoint(held)


def is_wildcard(permission: str) -> bool:
    """Check if a permission code contains a wildcard segment."""
    return WILDCARD in permission.split(SEPARATOR)
