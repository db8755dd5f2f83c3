import math
from decimal import Decimal, ROUND_DOWN

WAD = 10**18
WAD_DECIMALS = 18

# Ajna bucket grid: price(index) = 1.005 ** (4156 - index)
FLOAT_STEP = 1.005
MAX_BUCKET_INDEX = 4156
MIN_BUCKET_INDEX = -3232
MAX_PRICE_INDEX = 7388


def to_wad(amount: int, decimals: int) -> int:
    """Scale a native token amount up (or down) to 18 decimals."""
    if decimals == WAD_DECIMALS:
        return int(amount)
    if decimals < WAD_DECIMALS:
        return int(amount) * 10 ** (WAD_DECIMALS - decimals)
    return int(amount) // 10 ** (decimals - WAD_DECIMALS)


def from_wad(wad: int, decimals: int) -> int:
    """Scale a WAD amount to a token's native decimals, truncating dust."""
    if decimals == WAD_DECIMALS:
        return int(wad)
    if decimals < WAD_DECIMALS:
        return int(wad) // 10 ** (WAD_DECIMALS - decimals)
    return int(wad) * 10 ** (decimals - WAD_DECIMALS)


def wad_to_decimal(wad: int, decimals: int = WAD_DECIMALS) -> Decimal:
    return Decimal(int(wad)) / (Decimal(10) ** decimals)


def decimal_to_wad(value, decimals: int = WAD_DECIMALS) -> int:
    """Convert a human number (Decimal, str, int or float) into a scaled int."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    scaled = value * (Decimal(10) ** decimals)
    return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def wmul(a: int, b: int) -> int:
    return (int(a) * int(b)) // WAD


def wdiv(a: int, b: int) -> int:
    return (int(a) * WAD) // int(b)


def price_at(index: int) -> Decimal:
    """Bucket price for an Ajna bucket index."""
    return Decimal(FLOAT_STEP ** (MAX_BUCKET_INDEX - index))


def index_of(price) -> int:
    """Bucket index whose price is closest to (and not below) `price`."""
    price = float(price)
    if price <= 0:
        raise ValueError(f"Bucket price must be positive, got {price}")
    raw = math.log(price) / math.log(FLOAT_STEP)
    ceil_index = math.ceil(raw)
    if raw < 0 and ceil_index - raw > 0.5:
        index = MAX_BUCKET_INDEX + 1 - ceil_index
    else:
        index = MAX_BUCKET_INDEX - ceil_index
    return max(1, min(MAX_PRICE_INDEX, index))
