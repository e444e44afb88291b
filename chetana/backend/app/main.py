from __future__ import annotations

import json
import logging
import os
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, Field
from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, String, UniqueConstraint, create_engine, func, or_, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker

from . import streak_tracker
from .assessment_session import AssessmentSession, question_bank
from .logging_config import configure_logging
from .scoring_engine import AssessmentResult, InvalidAnswerValue, RiskAssessment, evaluate_submission
from .streak_tracker import (
    DeadlinePassed,
    StreakRecord,
    StreakUpdate,
    previous_day,
    reached_milestones,
    reset_if_missed_deadline,
)

logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"
REPO_ROOT = Path(__file__).resolve().parents[3]
load_dotenv(REPO_ROOT / ".env")


def resolve_db_path() -> str:
    db_env = (os.getenv("CHETANA_DB_PATH") or os.getenv("DB_PATH") or "").strip()
    db_path = Path(db_env) if db_env else (REPO_ROOT / "chetana.db")
    if not db_path.is_absolute():
        db_path = REPO_ROOT / db_path
    return str(db_path)


DB_PATH = resolve_db_path()
DATABASE_URL = f"sqlite:///{DB_PATH}"
SECRET_KEY = os.getenv("CHETANA_SECRET_KEY", "CHANGE_ME")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("CHETANA_TOKEN_MINUTES", str(60 * 24)))
ADMIN_EMAIL = os.getenv("CHETANA_ADMIN_EMAIL", "admin@chetana.com").strip().lower()
ADMIN_ALIAS = "admin"
STREAK_UPDATE_ATTEMPTS = 3

engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False})
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class StreakConflict(RuntimeError):
    pass


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    is_admin = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    assessments = relationship("Assessment", back_populates="user")
    streak = relationship("UserStreak", uselist=False, back_populates="user")


class Assessment(Base):
    __tablename__ = "assessments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    phq9_score = Column(Integer, nullable=False)
    gad7_score = Column(Integer, nullable=False)
    pss_score = Column(Integer, nullable=False)
    responses_json = Column(String, nullable=False, default="{}")
    assessment_date = Column(Date, index=True, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    user = relationship("User", back_populates="assessments")


class UserStreak(Base):
    __tablename__ = "user_streaks"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    current_streak = Column(Integer, default=0, nullable=False)
    longest_streak = Column(Integer, default=0, nullable=False)
    last_assessment_date = Column(Date, nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, nullable=False)

    user = relationship("User", back_populates="streak")


class MoodEntry(Base):
    __tablename__ = "mood_entries"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    mood_date = Column(Date, nullable=False)
    mood_rating = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "mood_date", name="uq_mood_user_date"),
    )


class CrisisEvent(Base):
    __tablename__ = "crisis_events"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    entry_date = Column(Date, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    source = Column(String, nullable=False)
    reasons_json = Column(String, nullable=False, default="[]")
    consented = Column(Boolean, default=False, nullable=False)


class Milestone(Base):
    __tablename__ = "milestones"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    milestone_id = Column(String(50), nullable=False)
    icon = Column(String(10), nullable=False)
    title = Column(String(100), nullable=False)
    description = Column(String, nullable=False)
    achieved_date = Column(Date, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "milestone_id", name="uq_milestone_user_milestone"),
    )


class TokenResponse(BaseModel):
    access_token: str
    token_type: str


class RegisterRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1)


class AssessmentSubmitRequest(BaseModel):
    answers: Dict[str, int]
    crisis_consent: bool = False
    override_datetime: Optional[datetime] = None


class StreakUpdateRequest(BaseModel):
    override_datetime: Optional[datetime] = None


class MoodCreate(BaseModel):
    mood_date: date
    mood_rating: int = Field(ge=1, le=10)


class MilestoneCreate(BaseModel):
    milestone_id: str = Field(min_length=1, max_length=50)
    icon: str = Field(min_length=1, max_length=10)
    title: str = Field(min_length=1, max_length=100)
    description: str = Field(min_length=1)
    achieved_date: Optional[date] = None


class StreakResponse(BaseModel):
    current_streak: int
    longest_streak: int
    last_assessment_date: Optional[date] = None


app = FastAPI(title="Chetana API", version=APP_VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup() -> None:
    configure_logging()
    Base.metadata.create_all(bind=engine)
    seed_admin_user()
    logger.info("Chetana API %s using database %s", APP_VERSION, DB_PATH)


def seed_admin_user() -> None:
    password = os.getenv("CHETANA_ADMIN_PASSWORD", "")
    if not password:
        return
    session = SessionLocal()
    try:
        if session.query(User).filter(User.email == ADMIN_EMAIL).first():
            return
        session.add(User(
            name="Admin",
            email=ADMIN_EMAIL,
            hashed_password=get_password_hash(password),
            is_admin=True,
        ))
        session.commit()
        logger.info("Seeded admin account %s", ADMIN_EMAIL)
    finally:
        session.close()


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_clock() -> Callable[[], datetime]:
    return utc_now


def is_dev_mode() -> bool:
    value = os.getenv("CHETANA_DEV_MODE", "").strip().lower()
    alt = os.getenv("DEV_MODE", "").strip().lower()
    return value in {"1", "true", "yes", "on"} or alt in {"1", "true", "yes", "on"}


def resolve_now(clock: Callable[[], datetime], override: Optional[datetime]) -> datetime:
    if override is None:
        return as_utc(clock())
    if not is_dev_mode():
        raise HTTPException(status_code=403, detail="Developer mode disabled")
    return as_utc(override)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = utc_now() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db)
) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        user_id = payload.get("sub")
        if user_id is None:
            raise credentials_exception
    except JWTError as exc:
        raise credentials_exception from exc

    user = db.query(User).filter(User.id == int(user_id)).first()
    if user is None:
        raise credentials_exception
    return user


def get_current_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


def resolve_user_ref(user_ref: str, db: Session) -> int:
    """Map a user reference from the URL to a user id.

    The literal ``admin`` resolves to the configured admin account; anything
    else must be a numeric id of an existing user.
    """
    if user_ref.strip().lower() == ADMIN_ALIAS:
        admin = db.query(User).filter(User.email == ADMIN_EMAIL).first()
        if admin is None:
            raise HTTPException(status_code=404, detail="Admin user not found")
        return admin.id
    try:
        user_id = int(user_ref)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user id format") from exc
    if db.query(User.id).filter(User.id == user_id).first() is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user_id


# Persistence store


def streak_record_from_row(row: Optional[UserStreak]) -> Optional[StreakRecord]:
    if row is None:
        return None
    return StreakRecord(
        current_streak=row.current_streak,
        longest_streak=row.longest_streak,
        last_assessment_date=row.last_assessment_date,
    )


def get_streak(user_id: int, db: Session) -> Optional[StreakRecord]:
    row = (
        db.query(UserStreak)
        .filter(UserStreak.user_id == user_id)
        .populate_existing()
        .first()
    )
    return streak_record_from_row(row)


def ensure_streak(user_id: int, db: Session) -> StreakRecord:
    record = get_streak(user_id, db)
    if record is not None:
        return record
    db.add(UserStreak(user_id=user_id, current_streak=0, longest_streak=0))
    try:
        db.commit()
    except IntegrityError:
        # Created by a concurrent request between the read and the insert.
        db.rollback()
        return get_streak(user_id, db)
    return StreakRecord()


def put_streak(user_id: int, record: StreakRecord, db: Session) -> None:
    row = db.query(UserStreak).filter(UserStreak.user_id == user_id).first()
    if row is None:
        row = UserStreak(user_id=user_id)
        db.add(row)
    row.current_streak = record.current_streak
    row.longest_streak = record.longest_streak
    row.last_assessment_date = record.last_assessment_date
    row.updated_at = utc_now()
    db.commit()


def assessment_exists_for_date(user_id: int, day: date, db: Session) -> bool:
    return (
        db.query(Assessment.id)
        .filter(Assessment.user_id == user_id, Assessment.assessment_date == day)
        .first()
        is not None
    )


def insert_assessment(
    user_id: int,
    result: AssessmentResult,
    responses: Dict[str, int],
    day: date,
    db: Session,
) -> Assessment:
    assessment = Assessment(
        user_id=user_id,
        phq9_score=result.phq9,
        gad7_score=result.gad7,
        pss_score=result.pss,
        responses_json=json.dumps(responses, sort_keys=True),
        assessment_date=day,
        created_at=utc_now(),
    )
    db.add(assessment)
    db.commit()
    db.refresh(assessment)
    return assessment


def apply_streak_update(user_id: int, db: Session, now: datetime) -> StreakUpdate:
    """Credit today's assessment to the user's streak.

    The write is a compare-and-swap on the values that were read, so two
    submissions racing on the same day cannot both increment. A lost race
    re-reads and tries again, up to ``STREAK_UPDATE_ATTEMPTS`` times.
    """
    today = now.date()
    for attempt in range(1, STREAK_UPDATE_ATTEMPTS + 1):
        record = get_streak(user_id, db)
        outcome = streak_tracker.update(record, today, now)
        if outcome.same_day:
            return outcome
        new = outcome.record

        if record is None:
            db.add(UserStreak(
                user_id=user_id,
                current_streak=new.current_streak,
                longest_streak=new.longest_streak,
                last_assessment_date=new.last_assessment_date,
            ))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.warning("Streak insert for user %s lost a race (attempt %s)", user_id, attempt)
                continue
            logger.info("Started streak for user %s", user_id)
            return replace(outcome, milestones=award_streak_milestones(user_id, new, db))

        updated = streak_row_matching(user_id, record, db).update(
            {
                UserStreak.current_streak: new.current_streak,
                UserStreak.longest_streak: new.longest_streak,
                UserStreak.last_assessment_date: new.last_assessment_date,
                UserStreak.updated_at: utc_now(),
            },
            synchronize_session=False,
        )
        if updated == 1:
            db.commit()
            logger.info(
                "Streak for user %s is now %s (longest %s)",
                user_id,
                new.current_streak,
                new.longest_streak,
            )
            return replace(outcome, milestones=award_streak_milestones(user_id, new, db))
        db.rollback()
        logger.warning("Streak update for user %s lost a race (attempt %s)", user_id, attempt)

    raise StreakConflict(f"Could not update streak for user {user_id}")


def streak_row_matching(user_id: int, record: StreakRecord, db: Session):
    """Query for the user's streak row, only while it still holds ``record``."""
    query = db.query(UserStreak).filter(
        UserStreak.user_id == user_id,
        UserStreak.current_streak == record.current_streak,
    )
    if record.last_assessment_date is None:
        return query.filter(UserStreak.last_assessment_date.is_(None))
    return query.filter(UserStreak.last_assessment_date == record.last_assessment_date)


def award_milestone(
    user_id: int,
    milestone_id: str,
    icon: str,
    title: str,
    description: str,
    achieved_date: date,
    db: Session,
) -> bool:
    existing = (
        db.query(Milestone.id)
        .filter(Milestone.user_id == user_id, Milestone.milestone_id == milestone_id)
        .first()
    )
    if existing is not None:
        return False
    db.add(Milestone(
        user_id=user_id,
        milestone_id=milestone_id,
        icon=icon,
        title=title,
        description=description,
        achieved_date=achieved_date,
    ))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True


def award_streak_milestones(user_id: int, record: StreakRecord, db: Session) -> Tuple[str, ...]:
    awarded = []
    for item in reached_milestones(record):
        if award_milestone(
            user_id,
            item.milestone_id,
            item.icon,
            item.title,
            item.description,
            record.last_assessment_date,
            db,
        ):
            awarded.append(item.milestone_id)
    if awarded:
        logger.info("User %s reached milestones %s", user_id, ",".join(awarded))
    return tuple(awarded)


def reset_missed_streaks(db: Session, today: date) -> List[int]:
    """Zero the current streak of every user who skipped ``today - 1``.

    Users already credited today are left alone, and each reset only lands
    if the row still holds the values that were read.
    """
    yesterday = previous_day(today)
    rows = (
        db.query(UserStreak)
        .join(User, User.id == UserStreak.user_id)
        .filter(
            UserStreak.current_streak > 0,
            User.is_admin.is_(False),
            or_(UserStreak.last_assessment_date.is_(None), UserStreak.last_assessment_date < today),
        )
        .all()
    )
    candidates = [(row.user_id, streak_record_from_row(row)) for row in rows]
    reset_ids = []
    for user_id, record in candidates:
        updated = reset_if_missed_deadline(
            record,
            yesterday,
            lambda day, user_id=user_id: assessment_exists_for_date(user_id, day, db),
        )
        if updated == record:
            continue
        changed = streak_row_matching(user_id, record, db).update(
            {
                UserStreak.current_streak: updated.current_streak,
                UserStreak.updated_at: utc_now(),
            },
            synchronize_session=False,
        )
        db.commit()
        if changed == 1:
            reset_ids.append(user_id)
        else:
            logger.warning("Skipped streak reset for user %s; it changed while the job ran", user_id)
    if reset_ids:
        logger.info("Reset streaks for %s users who missed %s", len(reset_ids), yesterday.isoformat())
    return reset_ids


def delete_user_data(user_id: int, db: Session) -> None:
    for model in (Milestone, MoodEntry, CrisisEvent, Assessment, UserStreak):
        db.query(model).filter(model.user_id == user_id).delete(synchronize_session=False)
    db.query(User).filter(User.id == user_id).delete(synchronize_session=False)
    db.commit()


def record_crisis_event(
    user_id: int,
    entry_date: date,
    risk: RiskAssessment,
    consented: bool,
    db: Session,
) -> None:
    db.add(CrisisEvent(
        user_id=user_id,
        entry_date=entry_date,
        created_at=utc_now(),
        source="assessment",
        reasons_json=json.dumps(risk.reasons),
        consented=consented,
    ))
    db.commit()


def crisis_resources() -> List[dict]:
    return [
        {"label": "Tele-MANAS", "note": "Call 14416 or 1-800-891-4416 for free 24/7 mental health support in India."},
        {"label": "988 Lifeline", "note": "Call or text 988 in the U.S. for immediate support."},
        {"label": "Emergency", "note": "If you are in immediate danger, call your local emergency number."},
    ]


def serialize_assessment(assessment: Assessment) -> dict:
    return {
        "id": assessment.id,
        "phq9_score": assessment.phq9_score,
        "gad7_score": assessment.gad7_score,
        "pss_score": assessment.pss_score,
        "assessment_date": assessment.assessment_date.isoformat(),
        "created_at": assessment.created_at.isoformat(),
    }


def credit_streak(user_id: int, db: Session, now: datetime) -> dict:
    try:
        outcome = apply_streak_update(user_id, db, now)
    except DeadlinePassed as exc:
        return {"streak": None, "same_day": False, "deadline_passed": True, "current_time": exc.current_time, "milestones": []}
    except StreakConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {
        "streak": outcome.record.to_dict(),
        "same_day": outcome.same_day,
        "deadline_passed": False,
        "milestones": list(outcome.milestones),
    }


# Routes


@app.get("/health")
def health() -> dict:
    db_status = "ok"
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Database health check failed")
        db_status = "error"
    return {
        "status": "ok",
        "version": APP_VERSION,
        "db": db_status,
        "dev_mode": is_dev_mode(),
    }


@app.get("/meta")
def meta() -> dict:
    return {"version": APP_VERSION, "dev_mode": is_dev_mode(), "db_path": DB_PATH, "timezone": "UTC"}


@app.post("/auth/register", response_model=TokenResponse)
def register_user(payload: RegisterRequest, db: Session = Depends(get_db)) -> TokenResponse:
    email = payload.email.strip().lower()
    if email == ADMIN_EMAIL:
        raise HTTPException(status_code=400, detail="Email is reserved")
    existing = db.query(User).filter(User.email == email).first()
    if existing:
        raise HTTPException(status_code=400, detail="Email already registered")
    if len(payload.password.encode("utf-8")) > 72:
        raise HTTPException(
            status_code=400,
            detail="Password too long (bcrypt limit is 72 bytes). Use a shorter password.",
        )
    user = User(name=payload.name.strip(), email=email, hashed_password=get_password_hash(payload.password))
    db.add(user)
    db.commit()
    db.refresh(user)
    token = create_access_token({"sub": str(user.id), "email": user.email})
    return TokenResponse(access_token=token, token_type="bearer")


@app.post("/auth/login", response_model=TokenResponse)
def login_user(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db)
) -> TokenResponse:
    user = db.query(User).filter(User.email == form_data.username.strip().lower()).first()
    if not user or not verify_password(form_data.password, user.hashed_password):
        raise HTTPException(status_code=400, detail="Invalid email or password")
    token = create_access_token({"sub": str(user.id), "email": user.email})
    return TokenResponse(access_token=token, token_type="bearer")


@app.get("/assessments/questions")
def assessment_questions() -> List[dict]:
    return question_bank()


@app.post("/assessments")
def submit_assessment(
    payload: AssessmentSubmitRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> dict:
    now = resolve_now(clock, payload.override_datetime)
    today = now.date()
    try:
        session = AssessmentSession.from_payload(payload.answers)
        result, risk = evaluate_submission(session.instrument_answers())
    except InvalidAnswerValue as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if risk.is_crisis:
        record_crisis_event(user.id, today, risk, payload.crisis_consent, db)
        response = {
            "outcome": "crisis",
            "risk": risk.to_dict(),
            "resources": crisis_resources(),
            "recorded": False,
        }
        if not payload.crisis_consent:
            return response
        assessment = insert_assessment(user.id, result, dict(session.answers), today, db)
        response.update({"recorded": True, "assessment_id": assessment.id})
        response.update(credit_streak(user.id, db, now))
        return response

    assessment = insert_assessment(user.id, result, dict(session.answers), today, db)
    response = {
        "outcome": "results",
        "assessment_id": assessment.id,
        "result": result.to_dict(),
        "risk": risk.to_dict(),
        "complete": session.is_complete,
    }
    response.update(credit_streak(user.id, db, now))
    return response


@app.get("/assessments")
def list_assessments(
    limit: int = Query(50, ge=1, le=500),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> List[dict]:
    assessments = (
        db.query(Assessment)
        .filter(Assessment.user_id == user.id)
        .order_by(Assessment.assessment_date.desc(), Assessment.created_at.desc(), Assessment.id.desc())
        .limit(limit)
        .all()
    )
    return [serialize_assessment(item) for item in assessments]


@app.get("/assessments/count")
def count_assessments(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    count = db.query(func.count(Assessment.id)).filter(Assessment.user_id == user.id).scalar() or 0
    return {"count": count}


@app.get("/streaks", response_model=StreakResponse)
def read_streak(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> StreakResponse:
    record = ensure_streak(user.id, db)
    return StreakResponse(**record.to_dict())


@app.post("/streaks/update")
def update_streak(
    payload: Optional[StreakUpdateRequest] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> dict:
    now = resolve_now(clock, payload.override_datetime if payload else None)
    try:
        outcome = apply_streak_update(user.id, db, now)
    except DeadlinePassed as exc:
        raise HTTPException(
            status_code=400,
            detail={
                "error": str(exc),
                "deadline_passed": True,
                "current_time": exc.current_time,
            },
        ) from exc
    except StreakConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"streak": outcome.record.to_dict(), "same_day": outcome.same_day, "milestones": list(outcome.milestones)}


@app.post("/streaks/reset")
def reset_streak(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    record = ensure_streak(user.id, db)
    put_streak(user.id, StreakRecord(0, record.longest_streak, record.last_assessment_date), db)
    logger.info("User %s reset their streak", user.id)
    return {"message": "Streak reset successfully"}


@app.post("/moods")
def save_mood(
    payload: MoodCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    entry = (
        db.query(MoodEntry)
        .filter(MoodEntry.user_id == user.id, MoodEntry.mood_date == payload.mood_date)
        .first()
    )
    if entry:
        entry.mood_rating = payload.mood_rating
        entry.created_at = utc_now()
    else:
        entry = MoodEntry(user_id=user.id, mood_date=payload.mood_date, mood_rating=payload.mood_rating)
        db.add(entry)
    db.commit()
    db.refresh(entry)
    return {"mood_date": entry.mood_date.isoformat(), "mood_rating": entry.mood_rating}


@app.get("/moods")
def list_moods(
    days: int = Query(30, ge=1, le=365),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> List[dict]:
    start_date = as_utc(clock()).date() - timedelta(days=days - 1)
    entries = (
        db.query(MoodEntry)
        .filter(MoodEntry.user_id == user.id, MoodEntry.mood_date >= start_date)
        .order_by(MoodEntry.mood_date)
        .all()
    )
    return [{"mood_date": entry.mood_date.isoformat(), "mood_rating": entry.mood_rating} for entry in entries]


def serialize_milestone(milestone: Milestone) -> dict:
    return {
        "milestone_id": milestone.milestone_id,
        "icon": milestone.icon,
        "title": milestone.title,
        "description": milestone.description,
        "achieved_date": milestone.achieved_date.isoformat(),
    }


@app.post("/milestones")
def save_milestone(
    payload: MilestoneCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> dict:
    achieved_date = payload.achieved_date or as_utc(clock()).date()
    awarded = award_milestone(
        user.id,
        payload.milestone_id,
        payload.icon,
        payload.title,
        payload.description,
        achieved_date,
        db,
    )
    return {"milestone_id": payload.milestone_id, "awarded": awarded}


@app.get("/milestones")
def list_milestones(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> List[dict]:
    milestones = (
        db.query(Milestone)
        .filter(Milestone.user_id == user.id)
        .order_by(Milestone.achieved_date.desc(), Milestone.created_at.desc(), Milestone.id.desc())
        .all()
    )
    return [serialize_milestone(item) for item in milestones]


@app.delete("/users/me")
def delete_own_account(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    if user.is_admin:
        raise HTTPException(status_code=400, detail="Admin account cannot be deleted")
    user_id = user.id
    delete_user_data(user_id, db)
    logger.info("User %s deleted their account", user_id)
    return {"message": "Account deleted successfully"}


@app.get("/admin/users")
def admin_list_users(
    _admin: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
) -> dict:
    rows = (
        db.query(
            User,
            func.count(Assessment.id).label("assessment_count"),
            func.max(Assessment.created_at).label("last_assessment"),
        )
        .outerjoin(Assessment, Assessment.user_id == User.id)
        .filter(User.is_admin.is_(False))
        .group_by(User.id)
        .order_by(User.created_at.desc(), User.id.desc())
        .all()
    )
    users = [
        {
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "created_at": user.created_at.isoformat(),
            "assessment_count": assessment_count,
            "last_assessment": last_assessment.isoformat() if last_assessment else None,
        }
        for user, assessment_count, last_assessment in rows
    ]
    return {
        "users": users,
        "total_users": len(users),
        "total_assessments": sum(item["assessment_count"] for item in users),
    }


@app.delete("/admin/users/{user_ref}")
def admin_delete_user(
    user_ref: str,
    _admin: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
) -> dict:
    user_id = resolve_user_ref(user_ref, db)
    target = db.get(User, user_id)
    if target.is_admin:
        raise HTTPException(status_code=400, detail="Admin account cannot be deleted")
    delete_user_data(user_id, db)
    logger.info("Admin deleted user %s", user_id)
    return {"message": "User deleted successfully", "user_id": user_id}


@app.get("/admin/users/{user_ref}/streak", response_model=StreakResponse)
def admin_user_streak(
    user_ref: str,
    _admin: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
) -> StreakResponse:
    user_id = resolve_user_ref(user_ref, db)
    record = ensure_streak(user_id, db)
    return StreakResponse(**record.to_dict())


@app.post("/admin/streaks/reset-missed")
def admin_reset_missed(
    _admin: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> dict:
    today = as_utc(clock()).date()
    reset_ids = reset_missed_streaks(db, today)
    return {"date": today.isoformat(), "reset_user_ids": reset_ids, "reset_count": len(reset_ids)}
