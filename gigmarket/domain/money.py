from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

CENT = Decimal("0.01")


def to_cents(amount: Decimal) -> int:
    """
    Converts a currency amount to integer minor units (cents).

    Rounds half up, matching how the gateway expects amounts such as
    Math.round(amount * 100).
    """
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def quantize(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class FeeSplit:
    amount_cents: int
    fee_cents: int

    @property
    def net_cents(self) -> int:
        return self.amount_cents - self.fee_cents

    @property
    def amount(self) -> Decimal:
        return from_cents(self.amount_cents)

    @property
    def fee(self) -> Decimal:
        return from_cents(self.fee_cents)

    @property
    def net(self) -> Decimal:
        return from_cents(self.net_cents)


@dataclass(frozen=True)
class FeePolicy:
    """
    Platform service fee policy.

    mode="percentage": fee_cents = round(amount_cents * rate), half rounded up,
        so fractional cents always go to the platform.
    mode="flat": a fixed fee, capped at the amount itself.
    """
    mode: str = "percentage"
    rate: Decimal = Decimal("0.10")
    flat: Decimal = Decimal("2.50")

    def fee_cents(self, amount_cents: int) -> int:
        if amount_cents <= 0:
            return 0
        if self.mode == "flat":
            return min(to_cents(self.flat), amount_cents)
        fee = (Decimal(amount_cents) * Decimal(self.rate)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return int(fee)

    def split(self, amount: Decimal) -> FeeSplit:
        cents = to_cents(amount)
        return FeeSplit(amount_cents=cents, fee_cents=self.fee_cents(cents))

    def fee_for(self, amount: Decimal) -> Decimal:
        return self.split(amount).fee


def fee_policy_from_settings() -> FeePolicy:
    from gigmarket.settings import settings

    return FeePolicy(mode=settings.FEE_POLICY, rate=settings.FEE_RATE, flat=settings.FLAT_FEE)
