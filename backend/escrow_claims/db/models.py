"""
Database models for the claim ledger.

The ledger is a local audit trail of terminal claim results. It is never read
back to decide eligibility; the chain stays the source of truth.
"""
from sqlalchemy import Column, String, DateTime, Integer, Boolean, Text, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from datetime import datetime, timezone

from escrow_claims import config
from escrow_claims.errors import MalformedEscrowId
from escrow_claims.models import escrow_id_hex

Base = declarative_base()


def utc_now():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ledger_escrow_id(escrow_id):
    """Stored form of an escrow id; ids that do not parse are kept as given."""
    try:
        return escrow_id_hex(escrow_id)
    except MalformedEscrowId:
        return str(escrow_id)


def ledger_address(address):
    return address.lower() if address else None


class ClaimRecord(Base):
    """Model for tracking terminal claim results."""

    __tablename__ = 'claim_records'

    id = Column(Integer, primary_key=True, autoincrement=True)
    escrow_id = Column(String(66), nullable=False, index=True)
    receiver = Column(String(42), nullable=True, index=True)
    family = Column(String(20), nullable=True)
    token = Column(String(20), nullable=True)
    # base units as a decimal string; uint256 does not fit an integer column
    amount = Column(String(80), nullable=True)
    claim_all = Column(Boolean, default=False, nullable=False)
    success = Column(Boolean, default=False, nullable=False)
    state = Column(String(30), nullable=False)
    tx_hash = Column(String(66), nullable=True)
    approval_tx_hash = Column(String(66), nullable=True)
    error_code = Column(String(40), nullable=True)
    message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    def __repr__(self):
        return f"<ClaimRecord(escrow_id='{self.escrow_id[:16]}...', state={self.state}, amount={self.amount})>"

    def to_dict(self):
        return {
            "id": self.id,
            "escrow_id": self.escrow_id,
            "receiver": self.receiver,
            "family": self.family,
            "token": self.token,
            "amount": self.amount,
            "claim_all": self.claim_all,
            "success": self.success,
            "state": self.state,
            "tx_hash": self.tx_hash,
            "approval_tx_hash": self.approval_tx_hash,
            "error_code": self.error_code,
            "message": self.message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class ClaimLedger:
    """Records claim outcomes through a SQLAlchemy session factory."""

    def __init__(self, session_maker):
        self.session_maker = session_maker

    @classmethod
    def from_url(cls, database_url=None):
        return cls(get_session_maker(database_url, create=True))

    def record(self, request, result, token=None, family=None, receiver=None):
        session = self.session_maker()
        try:
            record = ClaimRecord(
                escrow_id=ledger_escrow_id(request.escrow_id),
                receiver=ledger_address(receiver or request.receiver),
                family=family or request.family,
                token=token,
                amount=None if result.amount is None else str(int(result.amount)),
                claim_all=bool(request.claim_all),
                success=result.success,
                state=result.state.value,
                tx_hash=result.tx_hash,
                approval_tx_hash=result.approval_tx_hash,
                error_code=result.error_code,
                message=result.message,
            )
            session.add(record)
            session.commit()
            return record.id
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def history(self, receiver=None, escrow_id=None, limit=50):
        session = self.session_maker()
        try:
            query = session.query(ClaimRecord)
            if receiver:
                query = query.filter(ClaimRecord.receiver == ledger_address(receiver))
            if escrow_id:
                query = query.filter(ClaimRecord.escrow_id == ledger_escrow_id(escrow_id))
            rows = query.order_by(ClaimRecord.id.desc()).limit(limit).all()
            return [row.to_dict() for row in rows]
        finally:
            session.close()


def get_session_maker(database_url=None, create=False):
    """Get SQLAlchemy session maker; falls back to ``config.DATABASE_URL``."""
    url = database_url or config.DATABASE_URL
    if not url:
        raise ValueError("DATABASE_URL environment variable is not set")
    engine = create_engine(url, echo=False, pool_pre_ping=True)
    if create:
        Base.metadata.create_all(engine)
    return sessionmaker(bind=engine)
