import os
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Tuple

UNLIMITED = -1


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    price_id: str
    price: int  # minor units (centavos)
    currency: str
    interval: str  # month | year
    features: Tuple[str, ...] = field(default_factory=tuple)
    max_messages: int = 0
    max_numbers: int = 0
    trial_days: int = 7

    def to_dict(self) -> Dict[str, object]:
        data = asdict(self)
        data["features"] = list(self.features)
        return data


def _build_catalog() -> Dict[str, Plan]:
    return {
        "starter": Plan(
            id="starter",
            name="Starter",
            price_id=os.getenv("STRIPE_STARTER_PRICE_ID", ""),
            price=9700,
            currency="brl",
            interval="month",
            features=(
                "Up to 1,000 messages/month",
                "1 WhatsApp number",
                "Specialized AI assistant",
                "Google Calendar",
                "Automatic email",
                "Basic dashboard",
            ),
            max_messages=1000,
            max_numbers=1,
        ),
        "professional": Plan(
            id="professional",
            name="Professional",
            price_id=os.getenv("STRIPE_PROFESSIONAL_PRICE_ID", ""),
            price=19700,
            currency="brl",
            interval="month",
            features=(
                "Up to 5,000 messages/month",
                "3 WhatsApp numbers",
                "Specialized AI assistant",
                "Google Calendar",
                "Automatic email",
                "Advanced dashboard",
                "Full analytics",
                "Priority support",
            ),
            max_messages=5000,
            max_numbers=3,
        ),
        "enterprise": Plan(
            id="enterprise",
            name="Enterprise",
            price_id=os.getenv("STRIPE_ENTERPRISE_PRICE_ID", ""),
            price=39700,
            currency="brl",
            interval="month",
            features=(
                "Unlimited messages",
                "Unlimited numbers",
                "Specialized AI assistant",
                "Google Calendar",
                "Automatic email",
                "Enterprise dashboard",
                "Advanced analytics",
                "Custom API",
                "Dedicated support",
            ),
            max_messages=UNLIMITED,
            max_numbers=UNLIMITED,
        ),
    }


PLANS: Dict[str, Plan] = _build_catalog()


def get_plans(catalog: Optional[Dict[str, Plan]] = None) -> List[Plan]:
    return list((catalog or PLANS).values())


def get_plan(plan_id: str, catalog: Optional[Dict[str, Plan]] = None) -> Optional[Plan]:
    return (catalog or PLANS).get(plan_id)
