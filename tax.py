"""
GST decomposition for invoice lines.

Stored prices already include GST, so the taxable base has to be recovered
by back-calculation:

    total   = unit_price * quantity
    taxable = total * 100 / (100 + rate)
    tax     = total - taxable

Intra-state sales split the tax evenly into SGST and CGST; inter-state
sales (or sales where either state cannot be resolved) carry a single IGST
line. All money is Decimal, quantized to paise with HALF_UP.
"""
import re
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Union

Number = Union[int, float, str, Decimal]

CENT = Decimal("0.01")
HUNDRED = Decimal("100")

STATE_ABBREVIATIONS = {
    "an": "andamanandnicobarislands",
    "andamanandnicobar": "andamanandnicobarislands",
    "ap": "andhrapradesh",
    "ar": "arunachalpradesh",
    "as": "assam",
    "br": "bihar",
    "cg": "chhattisgarh",
    "ct": "chhattisgarh",
    "ch": "chandigarh",
    "dh": "dadraandnagarhavelianddamananddiu",
    "dn": "dadraandnagarhavelianddamananddiu",
    "dl": "delhi",
    "nct": "delhi",
    "newdelhi": "delhi",
    "ga": "goa",
    "gj": "gujarat",
    "hp": "himachalpradesh",
    "hr": "haryana",
    "jh": "jharkhand",
    "jk": "jammuandkashmir",
    "jammukashmir": "jammuandkashmir",
    "ka": "karnataka",
    "kl": "kerala",
    "la": "ladakh",
    "ld": "lakshadweep",
    "mh": "maharashtra",
    "ml": "meghalaya",
    "mn": "manipur",
    "mp": "madhyapradesh",
    "mz": "mizoram",
    "nl": "nagaland",
    "od": "odisha",
    "or": "odisha",
    "orissa": "odisha",
    "pb": "punjab",
    "py": "puducherry",
    "pondicherry": "puducherry",
    "rj": "rajasthan",
    "sk": "sikkim",
    "tg": "telangana",
    "ts": "telangana",
    "tn": "tamilnadu",
    "tr": "tripura",
    "uk": "uttarakhand",
    "ut": "uttarakhand",
    "uttaranchal": "uttarakhand",
    "up": "uttarpradesh",
    "wb": "westbengal",
}

# every state and union territory, by canonical name
STATE_NAMES = frozenset(STATE_ABBREVIATIONS.values())

_NON_LETTERS = re.compile(r"[^a-z]")


def q2(value: Number) -> Decimal:
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def normalize_state(state: Optional[str]) -> Optional[str]:
    """Canonical lower-case letters-only state name, or None if blank or not an Indian state."""
    if not state:
        return None
    key = _NON_LETTERS.sub("", state.lower())
    if not key:
        return None
    name = STATE_ABBREVIATIONS.get(key, key)
    return name if name in STATE_NAMES else None


def is_intra_state(buyer_state: Optional[str], seller_state: Optional[str]) -> bool:
    buyer = normalize_state(buyer_state)
    seller = normalize_state(seller_state)
    return buyer is not None and buyer == seller


@dataclass(frozen=True)
class TaxComponent:
    name: str  # SGST, CGST or IGST
    rate: Decimal
    amount: Decimal


@dataclass(frozen=True)
class LineTax:
    total_price: Decimal
    taxable_value: Decimal
    tax_amount: Decimal
    components: List[TaxComponent] = field(default_factory=list)

    @property
    def intra_state(self) -> bool:
        return any(c.name == "CGST" for c in self.components)


def compute_line_tax(
    unit_price: Number,
    quantity: int,
    gst_rate: Number,
    buyer_state: Optional[str],
    seller_state: Optional[str],
) -> LineTax:
    price = Decimal(str(unit_price))
    rate = Decimal(str(gst_rate or 0))
    total = q2(price * quantity)

    if rate <= 0:
        return LineTax(total_price=total, taxable_value=total, tax_amount=q2(0))

    taxable = q2(total * HUNDRED / (HUNDRED + rate))
    tax = total - taxable

    if is_intra_state(buyer_state, seller_state):
        half_rate = rate / 2
        # CGST is the half-up rounded half and SGST the remainder, so they add back to the tax
        cgst = q2(tax / 2)
        sgst = tax - cgst
        components = [
            TaxComponent("SGST", half_rate, sgst),
            TaxComponent("CGST", half_rate, cgst),
        ]
    else:
        components = [TaxComponent("IGST", rate, tax)]

    return LineTax(total_price=total, taxable_value=taxable, tax_amount=tax, components=components)
