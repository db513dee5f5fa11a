from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
import logging
import re

import bcrypt
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel
from sqlalchemy import (
    BigInteger,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from satstrack.bitcoin_price import (
    BitcoinPriceService,
    amount_to_satoshis,
    format_bitcoin_price,
    format_satoshis,
)
from satstrack.config import Settings, configure_logging, load_settings
from satstrack.currency_conversion import (
    SUPPORTED_CURRENCIES,
    CompositeRateProvider,
    ExchangeRateApiProvider,
    RateProvider,
    StaticRateProvider,
    format_currency,
    is_supported_currency,
    normalize_currency,
)
from satstrack.summary_engine import (
    GroupedTotal,
    category_breakdown,
    month_key,
    monthly_trends,
    summarize,
    trend_window,
)

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
MIN_PASSWORD_LENGTH = 6
MAX_PASSWORD_BYTES = 72
DEFAULT_CATEGORY_COLOR = "#3B82F6"
CENT = Decimal("0.01")
# Upper bound of the Numeric(12, 2) amount column.
MAX_AMOUNT = Decimal("10000000000")
COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")

# Alias for models that also have a field named ``date``.
TransactionDate = date

DEFAULT_CATEGORIES = [
    ("Food & Dining", "expense", "#EF4444"),
    ("Transportation", "expense", "#F97316"),
    ("Shopping", "expense", "#EAB308"),
    ("Entertainment", "expense", "#8B5CF6"),
    ("Bills & Utilities", "expense", "#06B6D4"),
    ("Healthcare", "expense", "#EC4899"),
    ("Salary", "income", "#10B981"),
    ("Freelance", "income", "#059669"),
    ("Investment", "income", "#0D9488"),
    ("Other Income", "income", "#0891B2"),
]

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("hashed_password", String(255)),
    Column("currency", String(3), nullable=False, server_default="USD"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("type", String(20), nullable=False),
    Column("color", String(7), nullable=False, server_default=DEFAULT_CATEGORY_COLOR),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "name", name="uq_categories_user_name"),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("description", String(500)),
    Column("type", String(20), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id", ondelete="SET NULL")),
    Column("date", Date, nullable=False),
    Column("bitcoin_price", Numeric(18, 2), nullable=False),
    Column("satoshi_amount", BigInteger, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)


class TransactionType:
    values = {"income", "expense"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Type must be either income or expense.")
        return normalized


class SetupPayload(BaseModel):
    password: str
    currency: str | None = None


class PasswordPayload(BaseModel):
    password: str


class PasswordChangePayload(BaseModel):
    current_password: str
    new_password: str


class CurrencyPayload(BaseModel):
    currency: str | None = None


class UserResponse(BaseModel):
    id: int
    email: str
    currency: str
    created_at: datetime | None = None


class TokenResponse(BaseModel):
    token: str
    user: UserResponse


class SetupStatusResponse(BaseModel):
    has_password: bool


class CurrencyInfoResponse(BaseModel):
    code: str
    name: str
    symbol: str


class CategoryPayload(BaseModel):
    name: str
    type: str
    color: str | None = None

    @classmethod
    def validate_payload(cls, payload: "CategoryPayload") -> "CategoryPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Category name required.")
        payload.type = TransactionType.validate(payload.type)
        payload.color = validate_color(payload.color) if payload.color else DEFAULT_CATEGORY_COLOR
        return payload


class CategoryUpdatePayload(BaseModel):
    name: str | None = None
    color: str | None = None
    type: str | None = None

    @classmethod
    def validate_payload(cls, payload: "CategoryUpdatePayload") -> "CategoryUpdatePayload":
        if payload.name is None and payload.color is None:
            raise ValueError("No fields to update.")
        if payload.name is not None:
            payload.name = payload.name.strip()
            if not payload.name:
                raise ValueError("Category name required.")
        if payload.color is not None:
            payload.color = validate_color(payload.color)
        if payload.type is not None:
            payload.type = TransactionType.validate(payload.type)
        return payload


class CategoryResponse(BaseModel):
    id: int
    user_id: int
    name: str
    type: str
    color: str
    created_at: datetime | None = None


class TransactionPayload(BaseModel):
    amount: Decimal
    type: str
    date: date
    description: str | None = None
    category_id: int | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.type = TransactionType.validate(payload.type)
        payload.amount = validate_amount(payload.amount)
        payload.description = payload.description.strip() if payload.description else None
        return payload


class TransactionUpdatePayload(BaseModel):
    amount: Decimal | None = None
    date: TransactionDate | None = None
    description: str | None = None
    category_id: int | None = None

    @classmethod
    def validate_payload(
        cls, payload: "TransactionUpdatePayload"
    ) -> "TransactionUpdatePayload":
        fields_set = set(payload.model_fields_set)
        if not fields_set:
            raise ValueError("No fields to update.")
        if "amount" in fields_set:
            if payload.amount is None:
                raise ValueError("Amount must be greater than zero.")
            payload.amount = validate_amount(payload.amount)
        if "date" in fields_set and payload.date is None:
            raise ValueError("Date required.")
        if "description" in fields_set:
            payload.description = payload.description.strip() if payload.description else None
        return payload


class TransactionResponse(BaseModel):
    id: int
    user_id: int
    amount: Decimal
    currency: str
    type: str
    description: str | None = None
    category_id: int | None = None
    category_name: str | None = None
    category_color: str | None = None
    date: date
    bitcoin_price: Decimal
    satoshi_amount: int
    formatted_amount: str
    formatted_satoshis: str
    formatted_bitcoin_price: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TransactionPageResponse(BaseModel):
    transactions: list[TransactionResponse]
    page: int
    limit: int
    has_more: bool


class TransactionSummaryResponse(BaseModel):
    total_income: Decimal
    total_expenses: Decimal
    balance: Decimal
    transaction_count: int
    income_satoshis: int
    expense_satoshis: int
    net_satoshis: int
    currency: str
    source_currencies: list[str] | None = None


class CategorySummaryResponse(BaseModel):
    category_id: int
    category_name: str
    category_color: str
    total: Decimal
    satoshis: int
    count: int
    percentage: Decimal
    currency: str


class MonthlyTrendResponse(BaseModel):
    month: str
    income: Decimal
    expenses: Decimal
    income_satoshis: int
    expense_satoshis: int
    currency: str


class BitcoinPriceResponse(BaseModel):
    currency: str
    date: date
    price: Decimal
    formatted_price: str
    satoshis_per_unit: int


def validate_amount(value: Decimal) -> Decimal:
    if not value.is_finite():
        raise ValueError("Amount must be greater than zero.")
    if value >= MAX_AMOUNT:
        raise ValueError("Amount must be less than 10,000,000,000.")
    try:
        rounded = value.quantize(CENT, rounding=ROUND_HALF_UP)
    except ArithmeticError as exc:
        raise ValueError("Invalid amount.") from exc
    if rounded <= 0:
        raise ValueError("Amount must be greater than zero.")
    return rounded


def validate_color(value: str) -> str:
    normalized = value.strip()
    if not COLOR_PATTERN.match(normalized):
        raise ValueError("Color must be a hex value like #3B82F6.")
    return normalized.upper()


def validate_password(password: str) -> str:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes long.")
    return password


def validate_supported_currency(value: str | None) -> str:
    if not value:
        raise ValueError("Currency is required.")
    normalized = normalize_currency(value)
    if not is_supported_currency(normalized):
        raise ValueError("Invalid currency code.")
    return normalized


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        return False


def create_access_token(user_id: int, settings: Settings) -> str:
    expires_at = datetime.now(timezone.utc) + timedelta(days=settings.jwt_expire_days)
    claims = {"sub": str(user_id), "exp": expires_at}
    return jwt.encode(claims, settings.jwt_secret, algorithm=JWT_ALGORITHM)


def build_rate_provider(settings: Settings) -> CompositeRateProvider:
    return CompositeRateProvider(
        primary=ExchangeRateApiProvider(
            url=settings.exchange_rate_api_url,
            cache_ttl_seconds=settings.rate_cache_ttl_seconds,
            timeout=settings.http_timeout_seconds,
        ),
        fallback=StaticRateProvider(),
    )


def build_price_service(settings: Settings, rate_provider: RateProvider) -> BitcoinPriceService:
    return BitcoinPriceService(
        rate_provider=rate_provider,
        base_url=settings.coingecko_api_url,
        direct_currencies=settings.direct_price_currencies,
        cross_rate_currencies=settings.cross_rate_currencies,
        current_ttl_seconds=settings.price_cache_ttl_seconds,
        timeout=settings.http_timeout_seconds,
    )


def build_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    return create_engine(database_url, connect_args=connect_args)


def init_state(
    target: FastAPI,
    settings: Settings,
    engine: Engine | None = None,
    price_service: BitcoinPriceService | None = None,
) -> None:
    """Attach the shared engine and price/rate caches to ``target``.

    Everything here lives for the lifetime of the app and is handed to request
    handlers through the ``get_*`` dependencies below.
    """
    engine = engine or build_engine(settings.database_url)
    if price_service is None:
        price_service = build_price_service(settings, build_rate_provider(settings))
    metadata.create_all(engine)
    target.state.settings = settings
    target.state.engine = engine
    target.state.price_service = price_service
    target.state.rate_provider = price_service.rate_provider


@asynccontextmanager
async def lifespan(target: FastAPI):
    settings = target.state.settings
    configure_logging(settings.log_level)
    if getattr(target.state, "engine", None) is None:
        init_state(target, settings)
    logger.info("satstrack API started (database=%s)", target.state.engine.url)
    yield
    target.state.engine.dispose()
    logger.info("satstrack API stopped")


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_engine(request: Request) -> Engine:
    return request.app.state.engine


def get_price_service(request: Request) -> BitcoinPriceService:
    return request.app.state.price_service


def get_rate_provider(request: Request) -> RateProvider:
    return request.app.state.rate_provider


bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
    engine: Engine = Depends(get_engine),
) -> int:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Access token required.")
    try:
        claims = jwt.decode(
            credentials.credentials, settings.jwt_secret, algorithms=[JWT_ALGORITHM]
        )
        user_id = int(claims["sub"])
    except (JWTError, KeyError, TypeError, ValueError) as exc:
        raise HTTPException(status_code=403, detail="Invalid or expired token.") from exc
    with engine.begin() as conn:
        result = conn.execute(select(users.c.id).where(users.c.id == user_id))
        if not result.first():
            raise HTTPException(status_code=404, detail="User not found.")
    return user_id


def get_owner(conn) -> dict | None:
    return conn.execute(select(users).order_by(users.c.id.asc()).limit(1)).mappings().first()


def get_user_currency(conn, user_id: int, fallback: str) -> str:
    currency = conn.execute(
        select(users.c.currency).where(users.c.id == user_id)
    ).scalar_one_or_none()
    if currency:
        try:
            return normalize_currency(currency)
        except ValueError:
            pass
    return fallback


def resolve_display_currency(value: str | None, conn, user_id: int, fallback: str) -> str:
    if value:
        return validate_supported_currency(value)
    return get_user_currency(conn, user_id, fallback)


def ensure_default_categories(conn, user_id: int) -> None:
    existing = conn.execute(
        select(categories.c.id).where(categories.c.user_id == user_id).limit(1)
    ).first()
    if existing:
        return
    conn.execute(
        insert(categories),
        [
            {"user_id": user_id, "name": name, "type": category_type, "color": color}
            for name, category_type, color in DEFAULT_CATEGORIES
        ],
    )


def resolve_category(conn, user_id: int, category_id: int | None, txn_type: str) -> None:
    if category_id is None:
        return
    row = conn.execute(
        select(categories.c.user_id, categories.c.type).where(categories.c.id == category_id)
    ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Category not found.")
    if row["user_id"] != user_id:
        raise HTTPException(status_code=403, detail="Access denied.")
    if row["type"] != txn_type:
        raise HTTPException(
            status_code=400, detail="Category type must match transaction type."
        )


def load_owned_row(conn, table: Table, record_id: int, user_id: int, label: str) -> dict:
    row = conn.execute(select(table).where(table.c.id == record_id)).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail=f"{label} not found.")
    if row["user_id"] != user_id:
        raise HTTPException(status_code=403, detail="Access denied.")
    return row


def transaction_select():
    return select(
        transactions,
        categories.c.name.label("category_name"),
        categories.c.color.label("category_color"),
    ).select_from(
        transactions.outerjoin(categories, transactions.c.category_id == categories.c.id)
    )


def fetch_transaction(conn, transaction_id: int) -> dict | None:
    return conn.execute(
        transaction_select().where(transactions.c.id == transaction_id)
    ).mappings().first()


def coerce_decimal(value: Decimal | float | int | str) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def period_conditions(user_id: int, start_date: date | None, end_date: date | None) -> list:
    if start_date and end_date and start_date > end_date:
        raise HTTPException(status_code=400, detail="Start date must be on or before end date.")
    conditions = [transactions.c.user_id == user_id]
    if start_date is not None:
        conditions.append(transactions.c.date >= start_date)
    if end_date is not None:
        conditions.append(transactions.c.date <= end_date)
    return conditions


def aggregate_columns() -> list:
    return [
        func.coalesce(func.sum(transactions.c.amount), 0).label("amount"),
        func.coalesce(func.sum(transactions.c.satoshi_amount), 0).label("satoshis"),
        func.count().label("count"),
    ]


def grouped_total(row, group=None) -> GroupedTotal:
    return GroupedTotal(
        type=row["type"],
        currency=row["currency"],
        amount=coerce_decimal(row["amount"]),
        satoshis=int(row["satoshis"] or 0),
        count=int(row["count"] or 0),
        group=group,
    )


def user_response(row) -> UserResponse:
    return UserResponse(
        id=row["id"],
        email=row["email"],
        currency=row["currency"],
        created_at=row["created_at"],
    )


def category_response(row) -> CategoryResponse:
    return CategoryResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        type=row["type"],
        color=row["color"],
        created_at=row["created_at"],
    )


def transaction_response(row) -> TransactionResponse:
    amount = coerce_decimal(row["amount"])
    bitcoin_price = coerce_decimal(row["bitcoin_price"])
    return TransactionResponse(
        id=row["id"],
        user_id=row["user_id"],
        amount=amount,
        currency=row["currency"],
        type=row["type"],
        description=row["description"],
        category_id=row["category_id"],
        category_name=row["category_name"],
        category_color=row["category_color"],
        date=row["date"],
        bitcoin_price=bitcoin_price,
        satoshi_amount=row["satoshi_amount"],
        formatted_amount=format_currency(amount, row["currency"]),
        formatted_satoshis=format_satoshis(row["satoshi_amount"]),
        formatted_bitcoin_price=format_bitcoin_price(bitcoin_price, row["currency"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


router = APIRouter(prefix="/api")


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@router.get("/auth/setup-status", response_model=SetupStatusResponse)
def setup_status(engine: Engine = Depends(get_engine)) -> SetupStatusResponse:
    with engine.begin() as conn:
        owner = get_owner(conn)
    return SetupStatusResponse(has_password=bool(owner and owner["hashed_password"]))


@router.post("/auth/setup", response_model=TokenResponse)
def setup_password(
    payload: SetupPayload,
    engine: Engine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
) -> TokenResponse:
    try:
        password = validate_password(payload.password)
        currency = (
            validate_supported_currency(payload.currency)
            if payload.currency
            else settings.default_currency
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    hashed_password = hash_password(password)
    with engine.begin() as conn:
        owner = get_owner(conn)
        if owner and owner["hashed_password"]:
            raise HTTPException(status_code=400, detail="Password has already been set.")
        if owner:
            conn.execute(
                update(users)
                .where(users.c.id == owner["id"])
                .values(hashed_password=hashed_password, currency=currency, updated_at=func.now())
            )
            user_id = owner["id"]
        else:
            result = conn.execute(
                insert(users)
                .values(email=settings.owner_email, hashed_password=hashed_password, currency=currency)
                .returning(users.c.id)
            )
            user_id = result.scalar_one()
        ensure_default_categories(conn, user_id)
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().first()

    logger.info("Single-user setup completed for user %s", user_id)
    return TokenResponse(token=create_access_token(user_id, settings), user=user_response(row))


@router.post("/auth/login", response_model=TokenResponse)
def login(
    payload: PasswordPayload,
    engine: Engine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
) -> TokenResponse:
    if not payload.password:
        raise HTTPException(status_code=400, detail="Password is required.")
    with engine.begin() as conn:
        owner = get_owner(conn)

    if not owner or not owner["hashed_password"]:
        raise HTTPException(
            status_code=400, detail="Password not set. Please set up your password first."
        )
    if not verify_password(payload.password, owner["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid password.")
    return TokenResponse(
        token=create_access_token(owner["id"], settings), user=user_response(owner)
    )


@router.get("/auth/profile", response_model=UserResponse)
def get_profile(
    user_id: int = Depends(get_current_user_id), engine: Engine = Depends(get_engine)
) -> UserResponse:
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="User not found.")
    return user_response(row)


@router.put("/auth/currency", response_model=UserResponse)
def update_currency(
    payload: CurrencyPayload,
    user_id: int = Depends(get_current_user_id),
    engine: Engine = Depends(get_engine),
) -> UserResponse:
    try:
        currency = validate_supported_currency(payload.currency)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    with engine.begin() as conn:
        result = conn.execute(
            update(users)
            .where(users.c.id == user_id)
            .values(currency=currency, updated_at=func.now())
            .returning(users.c.id, users.c.email, users.c.currency, users.c.created_at)
        )
        row = result.mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="User not found.")
    return user_response(row)


@router.put("/auth/password", response_model=UserResponse)
def change_password(
    payload: PasswordChangePayload,
    user_id: int = Depends(get_current_user_id),
    engine: Engine = Depends(get_engine),
) -> UserResponse:
    try:
        new_password = validate_password(payload.new_password)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().first()
        if not row or not row["hashed_password"]:
            raise HTTPException(status_code=404, detail="User not found.")
        if not verify_password(payload.current_password, row["hashed_password"]):
            raise HTTPException(status_code=401, detail="Invalid password.")
        conn.execute(
            update(users)
            .where(users.c.id == user_id)
            .values(hashed_password=hash_password(new_password), updated_at=func.now())
        )
    return user_response(row)


@router.get("/auth/currencies", response_model=list[CurrencyInfoResponse])
def list_currencies() -> list[CurrencyInfoResponse]:
    return [
        CurrencyInfoResponse(code=info.code, name=info.name, symbol=info.symbol)
        for info in SUPPORTED_CURRENCIES.values()
    ]


@router.get("/categories", response_model=list[CategoryResponse])
def list_categories(
    type: str | None = Query(None),
    user_id: int = Depends(get_current_user_id),
    engine: Engine = Depends(get_engine),
) -> list[CategoryResponse]:
    conditions = [categories.c.user_id == user_id]
    if type:
        try:
            conditions.append(categories.c.type == TransactionType.validate(type))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    with engine.begin() as conn:
        rows = conn.execute(
            select(categories)
            .where(*conditions)
            .order_by(categories.c.name.asc(), categories.c.id.asc())
        ).mappings().all()
    return [category_response(row) for row in rows]


@router.post("/categories", response_model=CategoryResponse, status_code=201)
def create_category(
    payload: CategoryPayload,
    user_id: int = Depends(get_current_user_id),
    engine: Engine = Depends(get_engine),
) -> CategoryResponse:
    try:
        payload = CategoryPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        insert(categories)
        .values(user_id=user_id, name=payload.name, type=payload.type, color=payload.color)
        .returning(*categories.c)
    )
    try:
        with engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create category.")
    return category_response(row)


@router.get("/categories/{category_id}", response_model=CategoryResponse)
def get_category(
    category_id: int,
    user_id: int = Depends(get_current_user_id),
    engine: Engine = Depends(get_engine),
) -> CategoryResponse:
    with engine.begin() as conn:
        row = load_owned_row(conn, categories, category_id, user_id, "Category")
    return category_response(row)


@router.put("/categories/{category_id}", response_model=CategoryResponse)
def update_category(
    category_id: int,
    payload: CategoryUpdatePayload,
    user_id: int = Depends(get_current_user_id),
    engine: Engine = Depends(get_engine),
) -> CategoryResponse:
    try:
        payload = CategoryUpdatePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    values = {}
    if payload.name is not None:
        values["name"] = payload.name
    if payload.color is not None:
        values["color"] = payload.color
    try:
        with engine.begin() as conn:
            existing = load_owned_row(conn, categories, category_id, user_id, "Category")
            if payload.type is not None and payload.type != existing["type"]:
                raise HTTPException(status_code=400, detail="Category type cannot be changed.")
            row = conn.execute(
                update(categories)
                .where(categories.c.id == category_id)
                .values(**values)
                .returning(*categories.c)
            ).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc
    return category_response(row)


@router.delete("/categories/{category_id}")
def delete_category(
    category_id: int,
    user_id: int = Depends(get_current_user_id),
    engine: Engine = Depends(get_engine),
) -> dict:
    with engine.begin() as conn:
        load_owned_row(conn, categories, category_id, user_id, "Category")
        conn.execute(
            update(transactions)
            .where(transactions.c.category_id == category_id)
            .values(category_id=None)
        )
        conn.execute(categories.delete().where(categories.c.id == category_id))
    return {"status": "deleted"}


@router.get("/transactions", response_model=TransactionPageResponse)
def list_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    user_id: int = Depends(get_current_user_id),
    engine: Engine = Depends(get_engine),
) -> TransactionPageResponse:
    offset = (page - 1) * limit
    with engine.begin() as conn:
        rows = conn.execute(
            transaction_select()
            .where(transactions.c.user_id == user_id)
            .order_by(transactions.c.date.desc(), transactions.c.id.desc())
            .limit(limit)
            .offset(offset)
        ).mappings().all()
    return TransactionPageResponse(
        transactions=[transaction_response(row) for row in rows],
        page=page,
        limit=limit,
        has_more=len(rows) == limit,
    )


@router.post("/transactions", response_model=TransactionResponse, status_code=201)
def create_transaction(
    payload: TransactionPayload,
    user_id: int = Depends(get_current_user_id),
    engine: Engine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
    price_service: BitcoinPriceService = Depends(get_price_service),
) -> TransactionResponse:
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        resolve_category(conn, user_id, payload.category_id, payload.type)
        currency = get_user_currency(conn, user_id, settings.default_currency)

    bitcoin_price = price_service.price_for_date(payload.date, currency)
    satoshi_amount = amount_to_satoshis(payload.amount, bitcoin_price)
    with engine.begin() as conn:
        result = conn.execute(
            insert(transactions)
            .values(
                user_id=user_id,
                amount=payload.amount,
                currency=currency,
                description=payload.description,
                type=payload.type,
                category_id=payload.category_id,
                date=payload.date,
                bitcoin_price=bitcoin_price,
                satoshi_amount=satoshi_amount,
            )
            .returning(transactions.c.id)
        )
        row = fetch_transaction(conn, result.scalar_one())

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create transaction.")
    return transaction_response(row)


@router.get("/transactions/summary", response_model=TransactionSummaryResponse)
def transaction_summary(
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    currency: str | None = Query(None),
    user_id: int = Depends(get_current_user_id),
    engine: Engine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
    rate_provider: RateProvider = Depends(get_rate_provider),
) -> TransactionSummaryResponse:
    conditions = period_conditions(user_id, start_date, end_date)
    stmt = (
        select(transactions.c.type, transactions.c.currency, *aggregate_columns())
        .where(*conditions)
        .group_by(transactions.c.type, transactions.c.currency)
    )
    with engine.begin() as conn:
        try:
            display_currency = resolve_display_currency(
                currency, conn, user_id, settings.default_currency
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        rows = conn.execute(stmt).mappings().all()

    summary = summarize(
        [grouped_total(row) for row in rows], display_currency, rate_provider
    )
    return TransactionSummaryResponse(
        total_income=summary.total_income,
        total_expenses=summary.total_expenses,
        balance=summary.balance,
        transaction_count=summary.transaction_count,
        income_satoshis=summary.income_satoshis,
        expense_satoshis=summary.expense_satoshis,
        net_satoshis=summary.net_satoshis,
        currency=display_currency,
        source_currencies=summary.source_currencies or None,
    )


@router.get("/transactions/category-summary", response_model=list[CategorySummaryResponse])
def category_summary(
    type: str = Query(...),
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    currency: str | None = Query(None),
    user_id: int = Depends(get_current_user_id),
    engine: Engine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
    rate_provider: RateProvider = Depends(get_rate_provider),
) -> list[CategorySummaryResponse]:
    try:
        txn_type = TransactionType.validate(type)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    conditions = period_conditions(user_id, start_date, end_date)
    conditions.extend([transactions.c.type == txn_type, transactions.c.category_id.isnot(None)])
    stmt = (
        select(
            transactions.c.category_id,
            transactions.c.type,
            transactions.c.currency,
            *aggregate_columns(),
        )
        .where(*conditions)
        .group_by(transactions.c.category_id, transactions.c.type, transactions.c.currency)
    )
    with engine.begin() as conn:
        try:
            display_currency = resolve_display_currency(
                currency, conn, user_id, settings.default_currency
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        rows = conn.execute(stmt).mappings().all()
        category_rows = conn.execute(
            select(categories.c.id, categories.c.name, categories.c.color).where(
                categories.c.user_id == user_id
            )
        ).mappings().all()

    category_lookup = {row["id"]: (row["name"], row["color"]) for row in category_rows}
    breakdown = category_breakdown(
        [grouped_total(row, group=row["category_id"]) for row in rows],
        category_lookup,
        display_currency,
        rate_provider,
    )
    return [
        CategorySummaryResponse(
            category_id=item.category_id,
            category_name=item.category_name,
            category_color=item.category_color,
            total=item.total,
            satoshis=item.satoshis,
            count=item.count,
            percentage=item.percentage,
            currency=display_currency,
        )
        for item in breakdown
    ]


@router.get("/transactions/monthly-trends", response_model=list[MonthlyTrendResponse])
def monthly_trend_report(
    months: int = Query(12, ge=1, le=120),
    currency: str | None = Query(None),
    user_id: int = Depends(get_current_user_id),
    engine: Engine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
    rate_provider: RateProvider = Depends(get_rate_provider),
) -> list[MonthlyTrendResponse]:
    start_date, end_date = trend_window(date.today(), months)
    stmt = (
        select(
            transactions.c.date,
            transactions.c.type,
            transactions.c.currency,
            *aggregate_columns(),
        )
        .where(*period_conditions(user_id, start_date, end_date))
        .group_by(transactions.c.date, transactions.c.type, transactions.c.currency)
    )
    with engine.begin() as conn:
        try:
            display_currency = resolve_display_currency(
                currency, conn, user_id, settings.default_currency
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        rows = conn.execute(stmt).mappings().all()

    trends = monthly_trends(
        [grouped_total(row, group=month_key(row["date"])) for row in rows],
        start_date,
        end_date,
        display_currency,
        rate_provider,
    )
    return [
        MonthlyTrendResponse(
            month=trend.month,
            income=trend.income,
            expenses=trend.expenses,
            income_satoshis=trend.income_satoshis,
            expense_satoshis=trend.expense_satoshis,
            currency=display_currency,
        )
        for trend in trends
    ]


@router.get("/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: int,
    user_id: int = Depends(get_current_user_id),
    engine: Engine = Depends(get_engine),
) -> TransactionResponse:
    with engine.begin() as conn:
        load_owned_row(conn, transactions, transaction_id, user_id, "Transaction")
        row = fetch_transaction(conn, transaction_id)
    return transaction_response(row)


@router.put("/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdatePayload,
    user_id: int = Depends(get_current_user_id),
    engine: Engine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
    price_service: BitcoinPriceService = Depends(get_price_service),
) -> TransactionResponse:
    try:
        payload = TransactionUpdatePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    fields_set = payload.model_fields_set
    reprice = "amount" in fields_set or "date" in fields_set
    with engine.begin() as conn:
        existing = load_owned_row(conn, transactions, transaction_id, user_id, "Transaction")
        values = {}
        if "description" in fields_set:
            values["description"] = payload.description
        if "category_id" in fields_set:
            resolve_category(conn, user_id, payload.category_id, existing["type"])
            values["category_id"] = payload.category_id
        if reprice:
            currency = get_user_currency(conn, user_id, settings.default_currency)
    if not values and not reprice:
        raise HTTPException(status_code=400, detail="No fields to update.")

    if reprice:
        amount = payload.amount if "amount" in fields_set else coerce_decimal(existing["amount"])
        txn_date = payload.date if "date" in fields_set else existing["date"]
        bitcoin_price = price_service.price_for_date(txn_date, currency)
        values.update(
            amount=amount,
            date=txn_date,
            currency=currency,
            bitcoin_price=bitcoin_price,
            satoshi_amount=amount_to_satoshis(amount, bitcoin_price),
        )
    values["updated_at"] = func.now()
    with engine.begin() as conn:
        conn.execute(
            update(transactions)
            .where(transactions.c.id == transaction_id, transactions.c.user_id == user_id)
            .values(**values)
        )
        row = fetch_transaction(conn, transaction_id)
    if not row:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return transaction_response(row)


@router.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    user_id: int = Depends(get_current_user_id),
    engine: Engine = Depends(get_engine),
) -> dict:
    with engine.begin() as conn:
        load_owned_row(conn, transactions, transaction_id, user_id, "Transaction")
        conn.execute(transactions.delete().where(transactions.c.id == transaction_id))
    return {"status": "deleted"}


@router.get("/bitcoin/price", response_model=BitcoinPriceResponse)
def bitcoin_price(
    currency: str | None = Query(None),
    date_value: date | None = Query(None, alias="date"),
    user_id: int = Depends(get_current_user_id),
    engine: Engine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
    price_service: BitcoinPriceService = Depends(get_price_service),
) -> BitcoinPriceResponse:
    try:
        if currency:
            resolved_currency = normalize_currency(currency)
        else:
            with engine.begin() as conn:
                resolved_currency = get_user_currency(conn, user_id, settings.default_currency)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    today = price_service.today()
    if date_value is None or date_value >= today:
        price_date = today
        price = price_service.current_price(resolved_currency)
    else:
        price_date = date_value
        price = price_service.price_for_date(date_value, resolved_currency)
    return BitcoinPriceResponse(
        currency=resolved_currency,
        date=price_date,
        price=price,
        formatted_price=format_bitcoin_price(price, resolved_currency),
        satoshis_per_unit=amount_to_satoshis(1, price),
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or load_settings()
    application = FastAPI(title="satstrack", lifespan=lifespan)
    application.state.settings = settings
    application.state.engine = None
    application.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.include_router(router)
    return application


app = create_app()
