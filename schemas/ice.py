from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional, Union


class IceServer(BaseModel):
    urls: Union[str, List[str]]
    username: Optional[str] = None
    credential: Optional[str] = None


class IceServersResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ice_servers: List[IceServer] = Field(alias="iceServers")
