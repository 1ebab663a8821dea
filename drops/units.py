"""NEAR <-> yoctoNEAR conversion."""

from decimal import Decimal, InvalidOperation, ROUND_DOWN, localcontext
from typing import Optional, Union

from .constants import YOCTO_PER_NEAR
from .errors import ValidationError

# u128 has 39 digits; the default 28-digit context would round
_PRECISION = 80


def parse_near(text: Optional[Union[str, int, Decimal]]) -> int:
    """
    Convert a human NEAR amount ("5", "0.01") to yoctoNEAR.

    Blank input is 0 (a cancelled amount prompt). Sub-yocto digits are
    truncated. Raises ValidationError on anything that is not a number.
    """
    if text is None:
        return 0
    if isinstance(text, str):
        text = text.strip()
        if not text:
            return 0
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        try:
            value = Decimal(str(text))
        except InvalidOperation:
            raise ValidationError(f"Not a NEAR amount: {text!r}")
        if not value.is_finite():
            raise ValidationError(f"Not a NEAR amount: {text!r}")
        if value < 0:
            raise ValidationError("Amount cannot be negative")
        return int((value * YOCTO_PER_NEAR).to_integral_value(rounding=ROUND_DOWN))


def format_near(yocto: int, decimals: int = 2) -> str:
    """Render a yoctoNEAR balance with a fixed number of decimals."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        value = (Decimal(int(yocto)) / YOCTO_PER_NEAR).quantize(
            Decimal(1).scaleb(-decimals), rounding=ROUND_DOWN
        )
        return f"{value:,.{decimals}f}"
