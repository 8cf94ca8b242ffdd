import logging
import os
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, localcontext

import bcrypt
from fastapi import FastAPI, HTTPException, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    and_,
    create_engine,
    delete,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError

from backend.currency_format import format_currency, normalize_currency
from backend.insights import (
    INSIGHT_TTL,
    HabitSpending,
    InsightProviderUnavailable,
    InsightReplyError,
    SpendingEntry,
    generate_insights,
    has_spending_data,
    provider_from_env,
)
from backend.spending_projection import (
    DEFAULT_ANNUAL_RETURN,
    build_projection,
    get_opportunity_cost,
    project_spending,
    project_spending_with_growth,
)
from backend.spending_totals import (
    MonetaryEntry,
    calculate_period_totals,
    calculate_trend,
    category_breakdown,
    daily_series,
    period_boundaries,
    sum_between,
)
from backend.tier_limits import (
    SubscriptionTier,
    has_capacity,
    limits_for,
    parse_tier,
    register_monthly_usage,
    upgrade_target,
)
from backend.time_cost import calculate_time_cost, format_time_cost

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./habits.db")
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)
metadata = MetaData()


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", "USD")
    try:
        return normalize_currency(raw)
    except ValueError:
        return "USD"


def get_default_hourly_wage() -> Decimal:
    raw = os.getenv("DEFAULT_HOURLY_WAGE", "25")
    try:
        wage = Decimal(raw)
    except ArithmeticError:
        return Decimal("25")
    if not wage.is_finite() or wage <= 0:
        return Decimal("25")
    return wage


SYSTEM_DEFAULT_CURRENCY = get_system_default_currency()
DEFAULT_HOURLY_WAGE = get_default_hourly_wage()
INSIGHT_PROVIDER = provider_from_env()

DASHBOARD_WINDOW_DAYS = 90
TREND_WINDOW_DAYS = 30
RECENT_ENTRY_COUNT = 5
INSIGHT_LIST_LIMIT = 20
# Largest value a Numeric(10, 2) column holds.
MAX_AMOUNT = Decimal("99999999.99")
MIN_HOURLY_WAGE = Decimal("0.01")
MIN_ANNUAL_RETURN = Decimal("-1")
MAX_ANNUAL_RETURN = Decimal("1")
CENTS = Decimal("0.01")
ROUNDING_PRECISION = 60

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("name", String(100)),
    Column("hourly_wage", Numeric(10, 2)),
    Column("currency", String(3), nullable=False, server_default=SYSTEM_DEFAULT_CURRENCY),
    Column("subscription_tier", String(20), nullable=False, server_default="free"),
    Column("ai_insights_used", Integer, nullable=False, default=0),
    Column("ai_insights_reset_at", DateTime),
    Column("entries_this_month", Integer, nullable=False, default=0),
    Column("entries_reset_at", DateTime),
    Column("privacy_share_progress", Boolean, nullable=False, default=False),
    Column("privacy_share_amounts", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

habits = Table(
    "habits",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(100), nullable=False),
    Column("category", String(20), nullable=False),
    Column("default_amount", Numeric(10, 2)),
    Column("icon", String(50)),
    Column("color", String(20)),
    Column("is_archived", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

habit_entries = Table(
    "habit_entries",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("habit_id", Integer, ForeignKey("habits.id"), nullable=False),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("amount", Numeric(10, 2), nullable=False),
    Column("date", DateTime, nullable=False),
    Column("notes", String(500)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

goals = Table(
    "goals",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("habit_id", Integer, ForeignKey("habits.id")),
    Column("name", String(100), nullable=False),
    Column("type", String(20), nullable=False),
    Column("target_amount", Numeric(10, 2), nullable=False),
    Column("current_amount", Numeric(10, 2), nullable=False, default=Decimal("0")),
    Column("start_date", DateTime, nullable=False),
    Column("end_date", DateTime),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

friendships = Table(
    "friendships",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("requester_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("addressee_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

ai_insights = Table(
    "ai_insights",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("habit_id", Integer, ForeignKey("habits.id")),
    Column("type", String(20), nullable=False),
    Column("title", String(100), nullable=False),
    Column("content", Text, nullable=False),
    Column("is_helpful", Boolean),
    Column("is_read", Boolean, nullable=False, default=False),
    Column("expires_at", DateTime),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"detail": "Invalid input.", "errors": jsonable_encoder(exc.errors())},
    )


class HabitCategory:
    values = {
        "coffee",
        "food",
        "transport",
        "subscriptions",
        "entertainment",
        "shopping",
        "other",
    }

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid habit category.")
        return normalized


class GoalType:
    values = {"savings", "reduction"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid goal type.")
        return normalized


class GoalStatus:
    values = {"active", "completed", "cancelled"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid goal status.")
        return normalized


class FriendshipStatus:
    values = {"accepted", "blocked"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid friendship status.")
        return normalized


class CredentialsPayload(BaseModel):
    email: str
    password: str
    name: str | None = None


class UserResponse(BaseModel):
    id: int
    email: str
    name: str | None = None
    created_at: datetime | None = None


class UserProfileResponse(BaseModel):
    id: int
    email: str
    name: str | None = None
    hourly_wage: Decimal | None = None
    currency: str
    subscription_tier: SubscriptionTier
    ai_insights_used: int
    entries_this_month: int
    privacy_share_progress: bool
    privacy_share_amounts: bool
    created_at: datetime | None = None


class UserUpdatePayload(BaseModel):
    name: str | None = None
    hourly_wage: Decimal | None = None
    currency: str | None = None
    privacy_share_progress: bool | None = None
    privacy_share_amounts: bool | None = None

    @classmethod
    def validate_payload(cls, payload: "UserUpdatePayload") -> dict:
        values = payload.model_dump(exclude_unset=True)
        if "name" in values:
            name = (values["name"] or "").strip()
            if not name or len(name) > 100:
                raise ValueError("Name must be between 1 and 100 characters.")
            values["name"] = name
        if "hourly_wage" in values:
            wage = values["hourly_wage"]
            if wage is None or not wage.is_finite() or wage < MIN_HOURLY_WAGE:
                raise ValueError("Hourly wage must be a positive number.")
            if wage > MAX_AMOUNT:
                raise ValueError(f"Hourly wage must be at most {MAX_AMOUNT:,}.")
        if "currency" in values:
            if values["currency"] is None:
                raise ValueError("Currency required.")
            values["currency"] = normalize_currency(values["currency"])
        for flag in ("privacy_share_progress", "privacy_share_amounts"):
            if flag in values and values[flag] is None:
                raise ValueError(f"{flag} must be true or false.")
        return values


class HabitPayload(BaseModel):
    name: str
    category: str
    default_amount: Decimal | None = None
    icon: str | None = None
    color: str | None = None

    @classmethod
    def validate_payload(cls, payload: "HabitPayload") -> "HabitPayload":
        payload.name = payload.name.strip()
        if not payload.name or len(payload.name) > 100:
            raise ValueError("Habit name must be between 1 and 100 characters.")
        payload.category = HabitCategory.validate(payload.category)
        _validate_optional_amount(payload.default_amount, "Default amount")
        return payload


class HabitUpdatePayload(BaseModel):
    name: str | None = None
    category: str | None = None
    default_amount: Decimal | None = None
    icon: str | None = None
    color: str | None = None
    is_archived: bool | None = None

    @classmethod
    def validate_payload(cls, payload: "HabitUpdatePayload") -> dict:
        values = payload.model_dump(exclude_unset=True)
        if "name" in values:
            name = (values["name"] or "").strip()
            if not name or len(name) > 100:
                raise ValueError("Habit name must be between 1 and 100 characters.")
            values["name"] = name
        if "category" in values:
            if values["category"] is None:
                raise ValueError("Invalid habit category.")
            values["category"] = HabitCategory.validate(values["category"])
        if "is_archived" in values and values["is_archived"] is None:
            raise ValueError("is_archived must be true or false.")
        _validate_optional_amount(values.get("default_amount"), "Default amount")
        return values


class HabitResponse(BaseModel):
    id: int
    user_id: int
    name: str
    category: str
    default_amount: Decimal | None = None
    icon: str | None = None
    color: str | None = None
    is_archived: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None


class EntryPayload(BaseModel):
    habit_id: int
    amount: Decimal
    date: datetime
    notes: str | None = None

    @classmethod
    def validate_payload(cls, payload: "EntryPayload") -> "EntryPayload":
        _validate_positive_amount(payload.amount, "Amount")
        payload.date = to_local_naive(payload.date)
        payload.notes = payload.notes.strip() if payload.notes else None
        return payload


class EntryUpdatePayload(BaseModel):
    amount: Decimal | None = None
    date: datetime | None = None
    notes: str | None = None

    @classmethod
    def validate_payload(cls, payload: "EntryUpdatePayload") -> dict:
        values = payload.model_dump(exclude_unset=True)
        if "amount" in values:
            _validate_positive_amount(values["amount"], "Amount")
        if "date" in values:
            if values["date"] is None:
                raise ValueError("Date required.")
            values["date"] = to_local_naive(values["date"])
        if "notes" in values:
            values["notes"] = values["notes"].strip() if values["notes"] else None
        return values


class EntryResponse(BaseModel):
    id: int
    habit_id: int
    user_id: int
    amount: Decimal
    date: datetime
    notes: str | None = None
    created_at: datetime | None = None


class GoalPayload(BaseModel):
    name: str
    type: str
    target_amount: Decimal
    habit_id: int | None = None
    end_date: datetime | None = None

    @classmethod
    def validate_payload(cls, payload: "GoalPayload") -> "GoalPayload":
        payload.name = payload.name.strip()
        if not payload.name or len(payload.name) > 100:
            raise ValueError("Goal name must be between 1 and 100 characters.")
        payload.type = GoalType.validate(payload.type)
        _validate_positive_amount(payload.target_amount, "Target amount")
        if payload.end_date is not None:
            payload.end_date = to_local_naive(payload.end_date)
        return payload


class GoalUpdatePayload(BaseModel):
    name: str | None = None
    target_amount: Decimal | None = None
    current_amount: Decimal | None = None
    status: str | None = None
    end_date: datetime | None = None

    @classmethod
    def validate_payload(cls, payload: "GoalUpdatePayload") -> dict:
        values = payload.model_dump(exclude_unset=True)
        if "name" in values:
            name = (values["name"] or "").strip()
            if not name or len(name) > 100:
                raise ValueError("Goal name must be between 1 and 100 characters.")
            values["name"] = name
        if "target_amount" in values:
            _validate_positive_amount(values["target_amount"], "Target amount")
        if "current_amount" in values:
            current = values["current_amount"]
            if current is None or not current.is_finite() or current < 0:
                raise ValueError("Current amount must be zero or greater.")
        if "status" in values:
            if values["status"] is None:
                raise ValueError("Invalid goal status.")
            values["status"] = GoalStatus.validate(values["status"])
        if values.get("end_date") is not None:
            values["end_date"] = to_local_naive(values["end_date"])
        return values


class GoalResponse(BaseModel):
    id: int
    user_id: int
    habit_id: int | None = None
    name: str
    type: str
    target_amount: Decimal
    current_amount: Decimal
    progress_percent: int
    start_date: datetime
    end_date: datetime | None = None
    status: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class FriendRequestPayload(BaseModel):
    email: str


class FriendshipUpdatePayload(BaseModel):
    status: str


class FriendSummary(BaseModel):
    id: int
    name: str | None = None
    email: str


class FriendshipResponse(BaseModel):
    id: int
    requester_id: int
    addressee_id: int
    status: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class FriendshipDetailResponse(FriendshipResponse):
    is_requester: bool
    friend: FriendSummary | None = None


class InsightResponse(BaseModel):
    id: int
    user_id: int
    habit_id: int | None = None
    type: str
    title: str
    content: str
    is_helpful: bool | None = None
    is_read: bool
    expires_at: datetime | None = None
    created_at: datetime | None = None


class InsightFeedbackPayload(BaseModel):
    is_helpful: bool


class PeriodTotalsResponse(BaseModel):
    daily: Decimal
    weekly: Decimal
    monthly: Decimal
    yearly: Decimal


class TrendResponse(BaseModel):
    value: int
    direction: str


class ChartPoint(BaseModel):
    date: str
    amount: Decimal


class CategorySliceResponse(BaseModel):
    name: str
    value: Decimal
    color: str


class TimeCostResponse(BaseModel):
    hourly_wage: Decimal
    hours: Decimal
    formatted: str


class ProjectionCardResponse(BaseModel):
    monthly: Decimal
    yearly: Decimal
    five_year: Decimal
    five_year_with_growth: Decimal
    five_year_with_growth_display: str
    opportunity_cost: str | None = None


class RecentEntryResponse(EntryResponse):
    habit_name: str
    habit_category: str


class DashboardUser(BaseModel):
    name: str | None = None
    hourly_wage: Decimal
    currency: str
    subscription_tier: SubscriptionTier


class DashboardResponse(BaseModel):
    user: DashboardUser
    totals: PeriodTotalsResponse
    trend: TrendResponse
    chart_data: list[ChartPoint]
    category_data: list[CategorySliceResponse]
    time_cost: TimeCostResponse
    projection: ProjectionCardResponse
    habits: list[HabitResponse]
    goals: list[GoalResponse]
    recent_entries: list[RecentEntryResponse]
    habit_count: int
    entry_count: int


class ProjectionResponse(BaseModel):
    monthly_amount: Decimal
    months: int
    annual_return: Decimal
    linear_total: Decimal
    growth_total: Decimal
    opportunity_cost: str | None = None
    time_cost: TimeCostResponse


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def get_user_id(x_user_id: str | None = Header(None)) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    with engine.begin() as conn:
        result = conn.execute(select(users.c.id).where(users.c.id == user_id))
        if not result.first():
            raise HTTPException(status_code=404, detail="User not found.")
    return user_id


def to_local_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


def _validate_positive_amount(amount: Decimal | None, label: str) -> None:
    if amount is None or not amount.is_finite() or amount <= 0:
        raise ValueError(f"{label} must be a positive number.")
    if amount > MAX_AMOUNT:
        raise ValueError(f"{label} must be at most {MAX_AMOUNT:,}.")


def _validate_optional_amount(amount: Decimal | None, label: str) -> None:
    if amount is not None:
        _validate_positive_amount(amount, label)


def fetch_user(conn, user_id: int):
    row = conn.execute(select(users).where(users.c.id == user_id)).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="User not found.")
    return row


def resolve_tier(row) -> SubscriptionTier:
    try:
        return parse_tier(row["subscription_tier"])
    except ValueError:
        logger.warning(
            "User %s has unknown subscription tier %r; treating as free",
            row["id"],
            row["subscription_tier"],
        )
        return SubscriptionTier.FREE


def resolve_hourly_wage(row) -> Decimal:
    wage = row["hourly_wage"]
    if wage is None or wage <= 0:
        return DEFAULT_HOURLY_WAGE
    return wage


def upgrade_message(prefix: str, tier: SubscriptionTier) -> str:
    target = upgrade_target(tier)
    if target is None:
        return f"{prefix}."
    return f"{prefix}. Upgrade to {target.value.capitalize()} for more."


def claim_monthly_usage(conn, user_row, used_column: str, reset_column: str, usage) -> None:
    """Store ``usage`` only if the counter still holds the value read in ``user_row``."""
    result = conn.execute(
        update(users)
        .where(
            users.c.id == user_row["id"],
            users.c[used_column] == user_row[used_column],
        )
        .values({used_column: usage.used, reset_column: usage.reset_at})
    )
    if result.rowcount == 0:
        raise HTTPException(
            status_code=409,
            detail="Usage changed while processing the request. Please retry.",
        )


def fetch_owned_habit(conn, habit_id: int, user_id: int):
    row = conn.execute(
        select(habits).where(habits.c.id == habit_id, habits.c.user_id == user_id)
    ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Habit not found.")
    return row


def build_profile(row) -> UserProfileResponse:
    return UserProfileResponse(
        id=row["id"],
        email=row["email"],
        name=row["name"],
        hourly_wage=row["hourly_wage"],
        currency=row["currency"],
        subscription_tier=resolve_tier(row),
        ai_insights_used=row["ai_insights_used"],
        entries_this_month=row["entries_this_month"],
        privacy_share_progress=row["privacy_share_progress"],
        privacy_share_amounts=row["privacy_share_amounts"],
        created_at=row["created_at"],
    )


def calculate_goal_progress(current: Decimal, target: Decimal) -> int:
    if target <= 0:
        return 0
    percent = (current / target * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(min(max(percent, Decimal("0")), Decimal("100")))


def build_goal(row) -> GoalResponse:
    return GoalResponse(
        **row,
        progress_percent=calculate_goal_progress(row["current_amount"], row["target_amount"]),
    )


def round_cents(value: Decimal) -> Decimal:
    with localcontext() as context:
        context.prec = ROUNDING_PRECISION
        return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def build_time_cost(amount: Decimal, hourly_wage: Decimal) -> TimeCostResponse:
    hours = calculate_time_cost(amount, hourly_wage)
    return TimeCostResponse(
        hourly_wage=hourly_wage,
        hours=round_cents(hours),
        formatted=format_time_cost(hours),
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/auth/signup", response_model=UserResponse, status_code=201)
def signup(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password required.")
    hashed_password = hash_password(payload.password)
    name = payload.name.strip() if payload.name else None

    stmt = (
        insert(users)
        .values(email=email, hashed_password=hashed_password, name=name)
        .returning(users.c.id, users.c.email, users.c.name, users.c.created_at)
    )
    try:
        with engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create user.")
    return UserResponse(**row)


@app.post("/auth/login", response_model=UserResponse)
def login(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.email == email)).mappings().first()

    if not row or not verify_password(payload.password, row["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    return UserResponse(**row)


@app.get("/users/me", response_model=UserProfileResponse)
def get_profile(x_user_id: str | None = Header(None, alias="x-user-id")) -> UserProfileResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = fetch_user(conn, user_id)
    return build_profile(row)


@app.patch("/users/me", response_model=UserProfileResponse)
def update_profile(
    payload: UserUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> UserProfileResponse:
    user_id = get_user_id(x_user_id)
    try:
        values = UserUpdatePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        if values:
            conn.execute(
                update(users)
                .where(users.c.id == user_id)
                .values(**values, updated_at=datetime.now())
            )
        row = fetch_user(conn, user_id)
    return build_profile(row)


@app.get("/habits", response_model=list[HabitResponse])
def list_habits(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[HabitResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(habits)
            .where(habits.c.user_id == user_id, habits.c.is_archived.is_(False))
            .order_by(habits.c.id.asc())
        ).mappings().all()
    return [HabitResponse(**row) for row in rows]


@app.post("/habits", response_model=HabitResponse, status_code=201)
def create_habit(
    payload: HabitPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> HabitResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = HabitPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        user_row = fetch_user(conn, user_id)
        tier = resolve_tier(user_row)
        habit_count = conn.execute(
            select(func.count())
            .select_from(habits)
            .where(habits.c.user_id == user_id, habits.c.is_archived.is_(False))
        ).scalar_one()
        if not has_capacity(habit_count, limits_for(tier).max_habits):
            logger.info("Habit limit reached for user %s on %s tier", user_id, tier.value)
            raise HTTPException(
                status_code=403,
                detail=upgrade_message("Habit limit reached", tier),
            )
        row = conn.execute(
            insert(habits)
            .values(
                user_id=user_id,
                name=payload.name,
                category=payload.category,
                default_amount=payload.default_amount,
                icon=payload.icon,
                color=payload.color,
            )
            .returning(*habits.c)
        ).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create habit.")
    return HabitResponse(**row)


@app.get("/habits/{habit_id}", response_model=HabitResponse)
def get_habit(
    habit_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> HabitResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = fetch_owned_habit(conn, habit_id, user_id)
    return HabitResponse(**row)


@app.patch("/habits/{habit_id}", response_model=HabitResponse)
def update_habit(
    habit_id: int,
    payload: HabitUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> HabitResponse:
    user_id = get_user_id(x_user_id)
    try:
        values = HabitUpdatePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        fetch_owned_habit(conn, habit_id, user_id)
        if values:
            conn.execute(
                update(habits)
                .where(habits.c.id == habit_id, habits.c.user_id == user_id)
                .values(**values, updated_at=datetime.now())
            )
        row = fetch_owned_habit(conn, habit_id, user_id)
    return HabitResponse(**row)


@app.delete("/habits/{habit_id}")
def delete_habit(habit_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        fetch_owned_habit(conn, habit_id, user_id)
        conn.execute(delete(habit_entries).where(habit_entries.c.habit_id == habit_id))
        conn.execute(update(goals).where(goals.c.habit_id == habit_id).values(habit_id=None))
        conn.execute(
            update(ai_insights).where(ai_insights.c.habit_id == habit_id).values(habit_id=None)
        )
        conn.execute(delete(habits).where(habits.c.id == habit_id))
    return {"status": "deleted"}


@app.get("/entries", response_model=list[EntryResponse])
def list_entries(
    habit_id: int | None = Query(None),
    days: int = Query(30, ge=1),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[EntryResponse]:
    user_id = get_user_id(x_user_id)
    start_date = datetime.now() - timedelta(days=days)
    filters = [habit_entries.c.user_id == user_id, habit_entries.c.date >= start_date]
    if habit_id is not None:
        filters.append(habit_entries.c.habit_id == habit_id)

    with engine.begin() as conn:
        rows = conn.execute(
            select(habit_entries).where(and_(*filters)).order_by(habit_entries.c.date.desc())
        ).mappings().all()
    return [EntryResponse(**row) for row in rows]


@app.post("/entries", response_model=EntryResponse, status_code=201)
def create_entry(
    payload: EntryPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> EntryResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = EntryPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    now = datetime.now()
    with engine.begin() as conn:
        fetch_owned_habit(conn, payload.habit_id, user_id)
        user_row = fetch_user(conn, user_id)
        tier = resolve_tier(user_row)
        usage = register_monthly_usage(
            user_row["entries_this_month"],
            user_row["entries_reset_at"],
            now,
            limits_for(tier).max_entries_per_month,
        )
        if not usage.allowed:
            logger.info("Entry limit reached for user %s on %s tier", user_id, tier.value)
            raise HTTPException(
                status_code=403,
                detail=upgrade_message("Entry limit reached for this month", tier),
            )
        claim_monthly_usage(conn, user_row, "entries_this_month", "entries_reset_at", usage)
        row = conn.execute(
            insert(habit_entries)
            .values(
                habit_id=payload.habit_id,
                user_id=user_id,
                amount=payload.amount,
                date=payload.date,
                notes=payload.notes,
            )
            .returning(*habit_entries.c)
        ).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create entry.")
    return EntryResponse(**row)


@app.patch("/entries/{entry_id}", response_model=EntryResponse)
def update_entry(
    entry_id: int,
    payload: EntryUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> EntryResponse:
    user_id = get_user_id(x_user_id)
    try:
        values = EntryUpdatePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    owned = and_(habit_entries.c.id == entry_id, habit_entries.c.user_id == user_id)
    with engine.begin() as conn:
        if values:
            conn.execute(update(habit_entries).where(owned).values(**values))
        row = conn.execute(select(habit_entries).where(owned)).mappings().first()

    if not row:
        raise HTTPException(status_code=404, detail="Entry not found.")
    return EntryResponse(**row)


@app.delete("/entries/{entry_id}")
def delete_entry(entry_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        result = conn.execute(
            delete(habit_entries).where(
                habit_entries.c.id == entry_id, habit_entries.c.user_id == user_id
            )
        )
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Entry not found.")
    return {"status": "deleted"}


@app.get("/goals", response_model=list[GoalResponse])
def list_goals(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[GoalResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(goals)
            .where(goals.c.user_id == user_id, goals.c.status != "cancelled")
            .order_by(goals.c.id.asc())
        ).mappings().all()
    return [build_goal(row) for row in rows]


@app.post("/goals", response_model=GoalResponse, status_code=201)
def create_goal(
    payload: GoalPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> GoalResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = GoalPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        if payload.habit_id is not None:
            fetch_owned_habit(conn, payload.habit_id, user_id)
        row = conn.execute(
            insert(goals)
            .values(
                user_id=user_id,
                habit_id=payload.habit_id,
                name=payload.name,
                type=payload.type,
                target_amount=payload.target_amount,
                start_date=datetime.now(),
                end_date=payload.end_date,
            )
            .returning(*goals.c)
        ).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create goal.")
    return build_goal(row)


@app.get("/goals/{goal_id}", response_model=GoalResponse)
def get_goal(goal_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> GoalResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(
            select(goals).where(goals.c.id == goal_id, goals.c.user_id == user_id)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Goal not found.")
    return build_goal(row)


@app.patch("/goals/{goal_id}", response_model=GoalResponse)
def update_goal(
    goal_id: int,
    payload: GoalUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> GoalResponse:
    user_id = get_user_id(x_user_id)
    try:
        values = GoalUpdatePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    owned = and_(goals.c.id == goal_id, goals.c.user_id == user_id)
    with engine.begin() as conn:
        if values:
            conn.execute(update(goals).where(owned).values(**values, updated_at=datetime.now()))
        row = conn.execute(select(goals).where(owned)).mappings().first()

    if not row:
        raise HTTPException(status_code=404, detail="Goal not found.")
    return build_goal(row)


@app.delete("/goals/{goal_id}")
def delete_goal(goal_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        result = conn.execute(
            delete(goals).where(goals.c.id == goal_id, goals.c.user_id == user_id)
        )
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Goal not found.")
    return {"status": "deleted"}


@app.get("/friends", response_model=list[FriendshipDetailResponse])
def list_friends(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[FriendshipDetailResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(friendships)
            .where(
                or_(friendships.c.requester_id == user_id, friendships.c.addressee_id == user_id)
            )
            .order_by(friendships.c.id.asc())
        ).mappings().all()
        other_ids = {
            row["addressee_id"] if row["requester_id"] == user_id else row["requester_id"]
            for row in rows
        }
        people = {}
        if other_ids:
            people = {
                person["id"]: person
                for person in conn.execute(
                    select(users.c.id, users.c.name, users.c.email).where(users.c.id.in_(other_ids))
                ).mappings()
            }

    details: list[FriendshipDetailResponse] = []
    for row in rows:
        is_requester = row["requester_id"] == user_id
        other_id = row["addressee_id"] if is_requester else row["requester_id"]
        person = people.get(other_id)
        details.append(
            FriendshipDetailResponse(
                **row,
                is_requester=is_requester,
                friend=FriendSummary(**person) if person else None,
            )
        )
    return details


@app.post("/friends", response_model=FriendshipResponse, status_code=201)
def send_friend_request(
    payload: FriendRequestPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> FriendshipResponse:
    user_id = get_user_id(x_user_id)
    email = payload.email.strip().lower()
    if "@" not in email:
        raise HTTPException(status_code=400, detail="Valid email required.")

    with engine.begin() as conn:
        target_id = conn.execute(
            select(users.c.id).where(users.c.email == email)
        ).scalar_one_or_none()
        if target_id is None:
            raise HTTPException(status_code=404, detail="User not found.")
        if target_id == user_id:
            raise HTTPException(
                status_code=400, detail="Cannot send friend request to yourself."
            )
        existing = conn.execute(
            select(friendships.c.id).where(
                or_(
                    and_(
                        friendships.c.requester_id == user_id,
                        friendships.c.addressee_id == target_id,
                    ),
                    and_(
                        friendships.c.requester_id == target_id,
                        friendships.c.addressee_id == user_id,
                    ),
                )
            )
        ).first()
        if existing:
            raise HTTPException(status_code=400, detail="Friendship already exists.")
        row = conn.execute(
            insert(friendships)
            .values(requester_id=user_id, addressee_id=target_id)
            .returning(*friendships.c)
        ).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create friend request.")
    return FriendshipResponse(**row)


@app.patch("/friends/{friendship_id}", response_model=FriendshipResponse)
def update_friendship(
    friendship_id: int,
    payload: FriendshipUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> FriendshipResponse:
    user_id = get_user_id(x_user_id)
    try:
        status = FriendshipStatus.validate(payload.status)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    participant = and_(
        friendships.c.id == friendship_id,
        or_(friendships.c.requester_id == user_id, friendships.c.addressee_id == user_id),
    )
    with engine.begin() as conn:
        row = conn.execute(select(friendships).where(participant)).mappings().first()
        if not row:
            raise HTTPException(status_code=404, detail="Friendship not found.")
        if status == "accepted" and row["addressee_id"] != user_id:
            raise HTTPException(
                status_code=403, detail="Only the addressee can accept friend requests."
            )
        row = conn.execute(
            update(friendships)
            .where(friendships.c.id == friendship_id)
            .values(status=status, updated_at=datetime.now())
            .returning(*friendships.c)
        ).mappings().first()
    return FriendshipResponse(**row)


@app.delete("/friends/{friendship_id}")
def delete_friendship(
    friendship_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        result = conn.execute(
            delete(friendships).where(
                friendships.c.id == friendship_id,
                or_(friendships.c.requester_id == user_id, friendships.c.addressee_id == user_id),
            )
        )
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Friendship not found.")
    return {"status": "deleted"}


def fetch_spending_data(conn, user_id: int, since: datetime) -> list[HabitSpending]:
    habit_rows = conn.execute(
        select(habits.c.id, habits.c.name, habits.c.category)
        .where(habits.c.user_id == user_id, habits.c.is_archived.is_(False))
        .order_by(habits.c.id.asc())
    ).mappings().all()
    entry_rows = conn.execute(
        select(habit_entries.c.habit_id, habit_entries.c.amount, habit_entries.c.date, habit_entries.c.notes)
        .where(habit_entries.c.user_id == user_id, habit_entries.c.date >= since)
        .order_by(habit_entries.c.date.desc())
    ).mappings().all()

    entries_by_habit: dict[int, list[SpendingEntry]] = {}
    for row in entry_rows:
        entries_by_habit.setdefault(row["habit_id"], []).append(
            SpendingEntry(amount=row["amount"], date=row["date"], notes=row["notes"])
        )
    return [
        HabitSpending(
            habit_name=row["name"],
            category=row["category"],
            entries=entries_by_habit.get(row["id"], []),
        )
        for row in habit_rows
    ]


@app.get("/insights", response_model=list[InsightResponse])
def list_insights(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[InsightResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(ai_insights)
            .where(ai_insights.c.user_id == user_id, ai_insights.c.expires_at >= datetime.now())
            .order_by(ai_insights.c.created_at.desc(), ai_insights.c.id.desc())
            .limit(INSIGHT_LIST_LIMIT)
        ).mappings().all()
    return [InsightResponse(**row) for row in rows]


@app.post("/insights", response_model=list[InsightResponse], status_code=201)
def create_insights(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[InsightResponse]:
    user_id = get_user_id(x_user_id)
    now = datetime.now()
    with engine.begin() as conn:
        user_row = fetch_user(conn, user_id)
        spending = fetch_spending_data(conn, user_id, now - timedelta(days=TREND_WINDOW_DAYS))
        if not has_spending_data(spending):
            raise HTTPException(
                status_code=400,
                detail="Not enough spending data to generate insights. Log some entries first.",
            )

        tier = resolve_tier(user_row)
        usage = register_monthly_usage(
            user_row["ai_insights_used"],
            user_row["ai_insights_reset_at"],
            now,
            limits_for(tier).max_ai_insights_per_month,
        )
        if not usage.allowed:
            logger.info("AI insight limit reached for user %s on %s tier", user_id, tier.value)
            raise HTTPException(
                status_code=403,
                detail=upgrade_message("AI insights limit reached for this month", tier),
            )
        claim_monthly_usage(conn, user_row, "ai_insights_used", "ai_insights_reset_at", usage)

    try:
        drafts = generate_insights(spending, INSIGHT_PROVIDER)
    except (InsightProviderUnavailable, InsightReplyError) as exc:
        logger.exception("Failed to generate insights for user %s", user_id)
        with engine.begin() as conn:
            conn.execute(
                update(users)
                .where(users.c.id == user_id, users.c.ai_insights_used > 0)
                .values(ai_insights_used=users.c.ai_insights_used - 1)
            )
        raise HTTPException(status_code=500, detail="Failed to generate insights.") from exc

    expires_at = now + INSIGHT_TTL
    with engine.begin() as conn:
        rows = [
            conn.execute(
                insert(ai_insights)
                .values(
                    user_id=user_id,
                    type=draft.type,
                    title=draft.title,
                    content=draft.content,
                    expires_at=expires_at,
                )
                .returning(*ai_insights.c)
            ).mappings().first()
            for draft in drafts
        ]
    return [InsightResponse(**row) for row in rows]


@app.post("/insights/{insight_id}/feedback")
def insight_feedback(
    insight_id: int,
    payload: InsightFeedbackPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        result = conn.execute(
            update(ai_insights)
            .where(ai_insights.c.id == insight_id, ai_insights.c.user_id == user_id)
            .values(is_helpful=payload.is_helpful)
        )
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Insight not found.")
    return {"status": "ok"}


@app.get("/dashboard", response_model=DashboardResponse)
def dashboard(x_user_id: str | None = Header(None, alias="x-user-id")) -> DashboardResponse:
    user_id = get_user_id(x_user_id)
    # One clock reading for every calculation below.
    now = datetime.now()
    bounds = period_boundaries(now)
    window_start = now - timedelta(days=DASHBOARD_WINDOW_DAYS)
    trend_start = now - timedelta(days=TREND_WINDOW_DAYS)
    previous_trend_start = now - timedelta(days=TREND_WINDOW_DAYS * 2)
    fetch_since = min(bounds.start_of_year, window_start)

    with engine.begin() as conn:
        user_row = fetch_user(conn, user_id)
        habit_rows = conn.execute(
            select(habits)
            .where(habits.c.user_id == user_id, habits.c.is_archived.is_(False))
            .order_by(habits.c.id.asc())
        ).mappings().all()
        entry_rows = conn.execute(
            select(habit_entries)
            .where(habit_entries.c.user_id == user_id, habit_entries.c.date >= fetch_since)
            .order_by(habit_entries.c.date.desc(), habit_entries.c.id.desc())
        ).mappings().all()
        goal_rows = conn.execute(
            select(goals)
            .where(goals.c.user_id == user_id, goals.c.status == "active")
            .order_by(goals.c.id.asc())
        ).mappings().all()

    hourly_wage = resolve_hourly_wage(user_row)
    currency = user_row["currency"]
    habits_by_id = {row["id"]: row for row in habit_rows}
    all_entries = [MonetaryEntry(amount=row["amount"], date=row["date"]) for row in entry_rows]
    window_rows = [row for row in entry_rows if row["date"] >= window_start]
    window_entries = [MonetaryEntry(amount=row["amount"], date=row["date"]) for row in window_rows]

    totals = calculate_period_totals(all_entries, now)
    trend = calculate_trend(
        sum_between(window_entries, trend_start, now + timedelta(microseconds=1)),
        sum_between(window_entries, previous_trend_start, trend_start),
    )

    amounts_by_category: dict[str, Decimal] = {}
    for row in window_rows:
        habit = habits_by_id.get(row["habit_id"])
        if habit:
            category = habit["category"]
            amounts_by_category[category] = amounts_by_category.get(category, Decimal("0")) + row["amount"]

    projection = build_projection(totals.monthly)
    recent_entries = []
    for row in window_rows[:RECENT_ENTRY_COUNT]:
        habit = habits_by_id.get(row["habit_id"])
        recent_entries.append(
            RecentEntryResponse(
                **row,
                habit_name=habit["name"] if habit else "Unknown",
                habit_category=habit["category"] if habit else "other",
            )
        )

    return DashboardResponse(
        user=DashboardUser(
            name=user_row["name"],
            hourly_wage=hourly_wage,
            currency=currency,
            subscription_tier=resolve_tier(user_row),
        ),
        totals=PeriodTotalsResponse(
            daily=totals.daily,
            weekly=totals.weekly,
            monthly=totals.monthly,
            yearly=totals.yearly,
        ),
        trend=TrendResponse(value=trend.value, direction=trend.direction.value),
        chart_data=[
            ChartPoint(date=point.day.strftime("%b %d"), amount=point.amount)
            for point in daily_series(window_entries, now, days=TREND_WINDOW_DAYS)
        ],
        category_data=[
            CategorySliceResponse(name=item.name, value=item.value, color=item.color)
            for item in category_breakdown(amounts_by_category)
        ],
        time_cost=build_time_cost(totals.monthly, hourly_wage),
        projection=ProjectionCardResponse(
            monthly=projection.monthly,
            yearly=projection.yearly,
            five_year=projection.five_year,
            five_year_with_growth=round_cents(projection.five_year_with_growth),
            five_year_with_growth_display=format_currency(projection.five_year_with_growth, currency),
            opportunity_cost=projection.opportunity_cost,
        ),
        habits=[HabitResponse(**row) for row in habit_rows],
        goals=[build_goal(row) for row in goal_rows],
        recent_entries=recent_entries,
        habit_count=len(habit_rows),
        entry_count=len(window_rows),
    )


@app.get("/projections", response_model=ProjectionResponse)
def projections(
    monthly_amount: Decimal = Query(..., ge=0, le=MAX_AMOUNT),
    months: int = Query(12, ge=0, le=600),
    annual_return: Decimal = Query(
        DEFAULT_ANNUAL_RETURN, ge=MIN_ANNUAL_RETURN, le=MAX_ANNUAL_RETURN
    ),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ProjectionResponse:
    user_id = get_user_id(x_user_id)
    try:
        linear_total = project_spending(monthly_amount, months)
        growth_total = project_spending_with_growth(monthly_amount, months, annual_return)
        opportunity_cost = get_opportunity_cost(growth_total)
        growth_total = round_cents(growth_total)
    except (ValueError, ArithmeticError) as exc:
        raise HTTPException(status_code=400, detail="Projection inputs are out of range.") from exc

    with engine.begin() as conn:
        user_row = fetch_user(conn, user_id)

    try:
        time_cost = build_time_cost(linear_total, resolve_hourly_wage(user_row))
    except ArithmeticError as exc:
        raise HTTPException(status_code=400, detail="Projection inputs are out of range.") from exc

    return ProjectionResponse(
        monthly_amount=monthly_amount,
        months=months,
        annual_return=annual_return,
        linear_total=linear_total,
        growth_total=growth_total,
        opportunity_cost=opportunity_cost,
        time_cost=time_cost,
    )
