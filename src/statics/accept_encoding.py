"""Accept-Encoding header parsing."""

from dataclasses import dataclass

_QUALITY_MARKER = ";q="


@dataclass(frozen=True, slots=True)
class AcceptEncoding:
    """One coding from an Accept-Encoding header."""

    algorithm: str  # gzip, compress, deflate, br, identity, *
    quality_value: float  # 0-1 per RFC 9110, but not clamped; default 1.0


def parse_accept_encoding(*values: str) -> list[AcceptEncoding]:
    """Parse Accept-Encoding header values into a preference order.

    Every value may be a comma separated list of codings, each optionally
    weighted with ``;q=<float>``. Codings with an unparsable weight are dropped.
    The result is sorted by quality value, highest first; codings with equal
    quality keep the order they were given in.

    The wildcard ``*`` is returned like any other coding, interpreting it is up
    to the caller.

    Example:
        parse_accept_encoding("gzip;q=0.8, deflate;q=1.0", "br;q=0.5")
        # [AcceptEncoding("deflate", 1.0), AcceptEncoding("gzip", 0.8),
        #  AcceptEncoding("br", 0.5)]
    """
    result: list[AcceptEncoding] = []
    for value in values:
        for part in value.split(","):
            # rpartition: the last marker wins if a coding name contains ";q="
            algorithm, marker, quality = part.rpartition(_QUALITY_MARKER)
            if not marker:
                algorithm = part.strip()
                if algorithm:
                    result.append(AcceptEncoding(algorithm, 1.0))
                continue
            try:
                quality_value = float(quality.strip())
            except ValueError:
                continue
            algorithm = algorithm.strip()
            if algorithm:
                result.append(AcceptEncoding(algorithm, quality_value))
    # sorted() is stable, equal weights keep their collection order
    return sorted(result, key=lambda encoding: encoding.quality_value, reverse=True)
