"""
Single pricing stage for every promotion.

Automatic rules and coupon codes are both ``PromotionRule`` variants. Rules
run in order (automatic first, then the coupon) and each one only sees what
is left of ``items_price + shipping_price`` after the previous rules, so the
combined discount never takes an order below zero.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from carts import CartSnapshot
from coupons import evaluate_coupon
from database import money
from discounts import calculate_discount


@dataclass
class PromotionLine:
    source: str
    amount: float
    name: Optional[str] = None
    discount_id: Optional[str] = None
    code: Optional[str] = None
    coupon: Optional[Dict[str, Any]] = field(default=None, repr=False)


class PromotionRule(ABC):
    source = ""

    @abstractmethod
    def evaluate(self, snapshot: CartSnapshot, user_id: str, remaining: float) -> List[PromotionLine]:
        """Return the discount lines this rule grants, given ``remaining`` payable."""


class AutomaticPromotion(PromotionRule):
    source = "automatic"

    def evaluate(self, snapshot: CartSnapshot, user_id: str, remaining: float) -> List[PromotionLine]:
        result = calculate_discount(snapshot, user_id)
        return [
            PromotionLine(source=self.source, amount=a["amount"], name=a["name"], discount_id=a["discount_id"])
            for a in result["applied_discounts"]
        ]


class CouponPromotion(PromotionRule):
    source = "coupon"

    def __init__(self, code: str):
        self.code = code

    def evaluate(self, snapshot: CartSnapshot, user_id: str, remaining: float) -> List[PromotionLine]:
        result = evaluate_coupon(self.code, user_id, snapshot, base_total=remaining)
        coupon = result["coupon"]
        return [PromotionLine(source=self.source, amount=result["discount_amount"], name=coupon.get("description"),
                              code=coupon["code"], coupon=coupon)]


@dataclass
class PriceQuote:
    items_price: float
    tax_price: float
    shipping_price: float
    discount_amount: float
    total_price: float
    lines: List[PromotionLine] = field(default_factory=list)

    @property
    def coupon_line(self) -> Optional[PromotionLine]:
        return next((line for line in self.lines if line.source == CouponPromotion.source), None)

    @property
    def applied_discounts(self) -> List[Dict[str, Any]]:
        return [
            {"discount_id": line.discount_id, "name": line.name, "amount": line.amount}
            for line in self.lines if line.source == AutomaticPromotion.source
        ]

    def to_dict(self) -> Dict[str, Any]:
        coupon = self.coupon_line
        return {
            "items_price": self.items_price,
            "tax_price": self.tax_price,
            "shipping_price": self.shipping_price,
            "discount_amount": self.discount_amount,
            "total_price": self.total_price,
            "applied_discounts": self.applied_discounts,
            "coupon": {"code": coupon.code, "discount": coupon.amount} if coupon else None,
        }


def default_rules(coupon_code: Optional[str] = None) -> List[PromotionRule]:
    rules: List[PromotionRule] = [AutomaticPromotion()]
    if coupon_code:
        rules.append(CouponPromotion(coupon_code))
    return rules


def price_snapshot(snapshot: CartSnapshot, user_id: str, coupon_code: Optional[str] = None,
                   tax_price: float = 0.0, rules: Optional[List[PromotionRule]] = None) -> PriceQuote:
    items_price = snapshot.total_price
    shipping_price = money(snapshot.shipping_cost or 0)
    remaining = items_price + shipping_price
    granted: List[PromotionLine] = []
    for rule in rules if rules is not None else default_rules(coupon_code):
        for line in rule.evaluate(snapshot, user_id, remaining):
            line.amount = money(min(line.amount, remaining))
            if line.amount <= 0 and line.source != CouponPromotion.source:
                continue
            remaining -= line.amount
            granted.append(line)
    discount = money(sum(line.amount for line in granted))
    total = money(max(0.0, items_price + shipping_price - discount) + tax_price)
    return PriceQuote(
        items_price=items_price,
        tax_price=money(tax_price),
        shipping_price=shipping_price,
        discount_amount=discount,
        total_price=total,
        lines=granted,
    )
