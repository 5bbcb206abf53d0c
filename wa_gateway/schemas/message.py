from pydantic import BaseModel, Field, field_validator


class SendMessageRequest(BaseModel):
    session_id: str = Field(alias="sessionId", min_length=1)
    to: str = Field(min_length=1)
    text: str

    @field_validator("text")
    @classmethod
    def text_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("text must not be blank")
        return value
