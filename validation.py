"""Write-boundary checks for products.

Plain predicates returning a field -> message mapping; ``validate_product``
raises ``ValidationFailed`` when the mapping is not empty.
"""

from decimal import Decimal
from typing import Dict, Optional
from errors import ValidationFailed

NAME_MIN = 3
NAME_MAX = 100
DESCRIPTION_MAX = 255
MONEY_QUANTUM = Decimal("0.01")


# check_money_scale: Prices are stored with exactly two decimals.
def check_money_scale(value: Optional[Decimal], quantum: Decimal = MONEY_QUANTUM) -> Optional[str]:
    if value is None:
        return None
    if Decimal(value) != Decimal(value).quantize(quantum):
        return "Price must have at most two decimal places"
    return None


# check_discount_price: A discount, when present, must be positive and strictly
# below the actual price. None or zero means "no discount".
def check_discount_price(actual_price: Decimal, discounted_price: Optional[Decimal]) -> Optional[str]:
    if discounted_price is None or discounted_price == 0:
        return None
    if discounted_price < 0:
        return "Discounted price cannot be negative"
    if discounted_price >= actual_price:
        return "Discounted price must be lower than the actual price"
    return check_money_scale(discounted_price)


def check_actual_price(actual_price: Decimal) -> Optional[str]:
    if actual_price is None or actual_price <= 0:
        return "Actual price must be greater than zero"
    return check_money_scale(actual_price)


def check_name(name: str) -> Optional[str]:
    if not name or not name.strip():
        return "Product name cannot be blank"
    if not NAME_MIN <= len(name.strip()) <= NAME_MAX:
        return f"Product name must be between {NAME_MIN} and {NAME_MAX} characters"
    return None


def check_description(description: Optional[str]) -> Optional[str]:
    if description and len(description) > DESCRIPTION_MAX:
        return f"Product description must not exceed {DESCRIPTION_MAX} characters"
    return None


def check_stock(available: int) -> Optional[str]:
    if available is None or available < 0:
        return "Available quantity cannot be negative"
    return None


def product_errors(name: str, description: Optional[str], actual_price: Decimal,
                   discounted_price: Optional[Decimal], available: int) -> Dict[str, str]:
    checks = {
        "name": check_name(name),
        "description": check_description(description),
        "actual_price": check_actual_price(actual_price),
        "available": check_stock(available),
    }
    if checks["actual_price"] is None:
        checks["discounted_price"] = check_discount_price(actual_price, discounted_price)
    return {field: message for field, message in checks.items() if message}


def validate_product(name: str, description: Optional[str], actual_price: Decimal,
                     discounted_price: Optional[Decimal], available: int) -> None:
    errors = product_errors(name, description, actual_price, discounted_price, available)
    if errors:
        raise ValidationFailed(errors)
