def normalize_text(s: str) -> str:
    return " ".join(s.strip().split())


def normalize_domain_name(domain_name: str) -> str:
    """Lower-case, trim and drop the root dot: 'Example.COM.' -> 'example.com'."""
    return normalize_text(domain_name).lower().rstrip(".")


def normalize_registrar_id(registrar_id: str) -> str:
    # Registrar ids are case sensitive
    return normalize_text(registrar_id)
