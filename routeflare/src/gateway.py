from __future__ import annotations

from routeflare.src.errors import NoMatchingAddress
from routeflare.src.intent import RecordType, address_family
from routeflare.src.objects import Gateway


def gateway_addresses(gateway: Gateway, record_type: RecordType) -> list[str]:
    """Pick the addresses of *gateway* that feed a record of *record_type*.

    Only IP literals from ``status.addresses`` are considered; hostname
    addresses are skipped. The first address of each requested family is
    returned, IPv4 first.
    """
    by_family: dict[RecordType, list[str]] = {RecordType.A: [], RecordType.AAAA: []}
    for address in gateway.addresses:
        family = address_family(address.value)
        if family is not None:
            by_family[family].append(address.value.strip())

    result = [by_family[family][0] for family in record_type.families if by_family[family]]
    if not result:
        wanted = "IP" if record_type is RecordType.DUAL else (
            "IPv4" if record_type is RecordType.A else "IPv6"
        )
        raise NoMatchingAddress(
            f"no {wanted} addresses found in gateway {gateway.key} status.addresses"
        )
    return result
