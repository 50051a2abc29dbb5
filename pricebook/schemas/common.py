from pydantic import BaseModel

class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"

class SignupIn(BaseModel):
    name: str
    mobile: str
    password: str
