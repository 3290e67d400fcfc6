"""Plan catalog - immutable plan views keyed for entitlement lookups"""
import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from sellerhub.core.errors import PlanNotFound
from sellerhub.models.plan import Plan

logger = logging.getLogger(__name__)

PLAN_TYPES = ("free", "periodic-short", "periodic-long")


class PlanDataError(ValueError):
    """Raised when stored plan data breaks the catalog's uniqueness rules"""


@dataclass(frozen=True)
class ModuleGrant:
    page: str
    enabled: bool = True


@dataclass(frozen=True)
class FeatureGrant:
    page: str
    action: str
    credit_cost: int = 0
    enabled: bool = True
    expires_on_credits_exhausted: bool = False

    @property
    def key(self) -> str:
        return f"{self.page}.{self.action}"


@dataclass(frozen=True)
class RoleAccess:
    role_id: str
    modules: Dict[str, ModuleGrant] = field(default_factory=dict)
    features: Dict[Tuple[str, str], FeatureGrant] = field(default_factory=dict)


@dataclass(frozen=True)
class PlanSpec:
    """Read-only view of one plan version"""
    id: str
    name: str
    plan_type: str
    price: Decimal
    currency: str
    credits_granted: int
    duration_days: int
    modules: Dict[str, ModuleGrant] = field(default_factory=dict)
    features: Dict[Tuple[str, str], FeatureGrant] = field(default_factory=dict)
    # Insertion order is catalog order; the resolver walks roles in this order
    role_access: Dict[str, RoleAccess] = field(default_factory=dict)
    description: Optional[str] = None
    version: int = 1

    @property
    def is_free(self) -> bool:
        return self.price == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "plan_type": self.plan_type,
            "price": str(self.price),
            "currency": self.currency,
            "credits_granted": self.credits_granted,
            "duration_days": self.duration_days,
            "description": self.description,
            "modules": [m.page for m in self.modules.values() if m.enabled],
            "features": [
                {
                    "page": f.page,
                    "action": f.action,
                    "credit_cost": f.credit_cost,
                    "expires_on_credits_exhausted": f.expires_on_credits_exhausted,
                }
                for f in self.features.values() if f.enabled
            ],
            "roles": list(self.role_access.keys()),
            "is_free": self.is_free,
        }


def _build_modules(plan_id: str, scope: str, entries: Iterable[Dict[str, Any]]) -> Dict[str, ModuleGrant]:
    modules: Dict[str, ModuleGrant] = {}
    for entry in entries or []:
        grant = ModuleGrant(page=entry["page"], enabled=bool(entry.get("enabled", True)))
        if grant.page in modules:
            raise PlanDataError(f"Plan {plan_id}: duplicate module '{grant.page}' in {scope}")
        modules[grant.page] = grant
    return modules


def _build_features(plan_id: str, scope: str, entries: Iterable[Dict[str, Any]]) -> Dict[Tuple[str, str], FeatureGrant]:
    features: Dict[Tuple[str, str], FeatureGrant] = {}
    for entry in entries or []:
        cost = int(entry.get("credit_cost", 0))
        if cost < 0:
            raise PlanDataError(f"Plan {plan_id}: negative credit cost for {entry['page']}.{entry['action']}")
        grant = FeatureGrant(
            page=entry["page"],
            action=entry["action"],
            credit_cost=cost,
            enabled=bool(entry.get("enabled", True)),
            expires_on_credits_exhausted=bool(entry.get("expires_on_credits_exhausted", False)),
        )
        key = (grant.page, grant.action)
        if key in features:
            raise PlanDataError(f"Plan {plan_id}: duplicate feature '{grant.key}' in {scope}")
        features[key] = grant
    return features


def build_plan(plan: Plan) -> PlanSpec:
    """Turn a Plan row into a PlanSpec.

    Raises:
        PlanDataError: on duplicate module pages, duplicate (page, action)
            features within one scope, or a repeated role_id
    """
    roles: Dict[str, RoleAccess] = {}
    for entry in plan.role_access or []:
        role_id = entry["role_id"]
        if role_id in roles:
            raise PlanDataError(f"Plan {plan.id}: duplicate role '{role_id}'")
        scope = f"role '{role_id}'"
        roles[role_id] = RoleAccess(
            role_id=role_id,
            modules=_build_modules(plan.id, scope, entry.get("modules")),
            features=_build_features(plan.id, scope, entry.get("features")),
        )

    return PlanSpec(
        id=plan.id,
        name=plan.name,
        plan_type=plan.plan_type,
        price=Decimal(str(plan.price if plan.price is not None else 0)),
        currency=plan.currency,
        credits_granted=plan.credits_granted or 0,
        duration_days=plan.duration_days,
        modules=_build_modules(plan.id, "plan", plan.modules),
        features=_build_features(plan.id, "plan", plan.features),
        role_access=roles,
        description=plan.description,
        version=plan.version or 1,
    )


def get_plans(db: Session, include_inactive: bool = False) -> List[PlanSpec]:
    """Get all catalog plans, cheapest first"""
    query = db.query(Plan)
    if not include_inactive:
        query = query.filter(Plan.is_active.is_(True))
    return [build_plan(p) for p in query.order_by(Plan.price, Plan.id).all()]


def get_plan(plan_id: str, db: Session) -> PlanSpec:
    """Get one plan by ID

    Raises:
        PlanNotFound: if the plan does not exist
    """
    plan = db.query(Plan).filter(Plan.id == plan_id).first()
    if not plan:
        raise PlanNotFound(f"Plan '{plan_id}' not found", details={"plan_id": plan_id})
    return build_plan(plan)


def load_plans_file(path: str) -> List[Dict[str, Any]]:
    """Read plan definitions from a JSON file (a list of plan objects)"""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("plans", [])
    return data


def upsert_plans(definitions: List[Dict[str, Any]], db: Session, commit: bool = True) -> List[PlanSpec]:
    """Create or replace catalog plans from raw definitions.

    Changing the grants of an existing plan bumps its version. Each definition
    is validated with ``build_plan`` before anything is committed. With
    ``commit=False`` the caller owns the transaction.
    """
    specs = []
    for definition in definitions:
        plan_type = definition.get("plan_type", "periodic-short")
        if plan_type not in PLAN_TYPES:
            raise PlanDataError(f"Plan {definition.get('id')}: unknown plan type '{plan_type}'")

        plan = db.query(Plan).filter(Plan.id == definition["id"]).first()
        grants = (
            definition.get("modules", []),
            definition.get("features", []),
            definition.get("role_access", []),
        )
        if plan is None:
            plan = Plan(id=definition["id"], version=1)
            db.add(plan)
        elif (plan.modules, plan.features, plan.role_access) != grants:
            plan.version = (plan.version or 1) + 1

        plan.name = definition.get("name", definition["id"])
        plan.plan_type = plan_type
        plan.price = Decimal(str(definition.get("price", 0)))
        plan.currency = definition.get("currency", "inr")
        plan.credits_granted = int(definition.get("credits_granted", 0))
        plan.duration_days = int(definition.get("duration_days", 30))
        plan.description = definition.get("description")
        plan.modules, plan.features, plan.role_access = grants
        plan.is_active = bool(definition.get("is_active", True))

        specs.append(build_plan(plan))

    if not commit:
        return specs
    db.commit()
    logger.info(f"Upserted {len(specs)} plan(s): {', '.join(s.id for s in specs)}")
    return specs
