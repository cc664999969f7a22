ALLOWED_ROLES = {"SUPER_ADMIN", "ADMIN", "BUILDER", "CLIENT"}


def parse_roles(header_value):
    """Comma separated role names from the auth proxy; unknown names are dropped."""
    names = set()
    for raw in (header_value or "").split(","):
        name = raw.strip().upper()
        if name in ALLOWED_ROLES:
            names.add(name)
    return frozenset(names)
