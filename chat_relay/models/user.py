from typing import Optional, TypedDict


class UserDocument(TypedDict, total=False):

    _id: str
    full_name: Optional[str]
    profile_picture: Optional[str]
    user_type: Optional[str]
