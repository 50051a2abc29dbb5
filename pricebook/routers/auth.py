import logging
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from pricebook.errors import PersistenceError
from pricebook.schemas.common import SignupIn, Token
from pricebook.util.security import create_token, hash_pw, verify_pw
from pricebook.models.core import User
from pricebook.db import get_db

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger(__name__)

@router.post("/signup")
def signup(body: SignupIn, db: Session = Depends(get_db)):
    if not body.mobile.strip() or not body.password:
        raise HTTPException(400, detail="mobile and password are required")
    if db.query(User).filter(User.mobile == body.mobile).first():
        raise HTTPException(409, detail="Mobile already exists")
    u = User(name=body.name, mobile=body.mobile, pass_hash=hash_pw(body.password))
    db.add(u)
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"signup: database error: {e}")
        raise PersistenceError("signup failed, please retry") from e
    db.refresh(u)
    return {"id": u.id}

@router.post("/login", response_model=Token)
def login(mobile: str, password: str, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.mobile == mobile).first()
    if not user or not user.active or not verify_pw(user.pass_hash, password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return Token(access_token=create_token(user.id))
