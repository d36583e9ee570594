# backend/routes/auth.py
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import func
from sqlalchemy.orm import Session

from database import get_db
from models.users import User
from schemas.user import AccessToken, Account, Credentials, Registration
from services.errors import EmailTaken
from utils.audit import client_ip, write_log
from utils.hashing import get_password_hash, verify_password
from utils.tokenJWT import CUSTOMER, get_current_user, issue_token

router = APIRouter(tags=["Auth"])


def _find_account(db: Session, email: str):
    return db.query(User).filter(func.lower(User.email) == email).first()


@router.post("/register", response_model=Account, status_code=status.HTTP_201_CREATED)
def register(payload: Registration, request: Request, db: Session = Depends(get_db)):
    if _find_account(db, payload.email) is not None:
        write_log(db, actor_id=None, action="REGISTER", resource="auth", status="FAIL",
                  ip=client_ip(request), meta={"email": payload.email, "reason": "email taken"})
        raise EmailTaken(email=payload.email)

    account = User(
        email=payload.email,
        password_hash=get_password_hash(payload.password),
        role=CUSTOMER,
        full_name=payload.full_name,
    )
    db.add(account)
    db.flush()
    write_log(db, actor_id=account.id, action="REGISTER", resource="auth",
              ip=client_ip(request), meta={"email": account.email}, commit=False)
    db.commit()
    db.refresh(account)
    return account


@router.post("/login", response_model=AccessToken)
def login(payload: Credentials, request: Request, db: Session = Depends(get_db)):
    account = _find_account(db, payload.email)
    if account is None or not verify_password(payload.password, account.password_hash):
        # Unknown email and wrong password look the same to the caller
        write_log(db, actor_id=account.id if account else None, action="LOGIN", resource="auth",
                  status="FAIL", ip=client_ip(request), meta={"email": payload.email})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    write_log(db, actor_id=account.id, action="LOGIN", resource="auth",
              ip=client_ip(request), meta={"email": account.email})
    return AccessToken(access_token=issue_token(account), role=account.role)


@router.get("/me", response_model=Account)
def me(current_user: User = Depends(get_current_user)):
    return current_user
