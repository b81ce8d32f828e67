# models.py
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class TransportConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    timeout: float = 60.0
    verifyTls: Union[bool, str] = True
    followRedirects: bool = True
    headers: Dict[str, str] = {}

    def request_kwargs(self) -> dict:
        """Übersetzt die Konfiguration in Keyword-Argumente für requests."""
        return {
            "timeout": self.timeout,
            "verify": self.verifyTls,
            "allow_redirects": self.followRedirects,
        }


class DiscoveryOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    acceptMediaTypes: List[str] = []
    acceptLanguages: List[str] = []
    transport: TransportConfig = TransportConfig()


class DiscoveryTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["discovery"] = "discovery"
    url: str


class HubTopicTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["hubTopic"] = "hubTopic"
    hub: str
    topic: str


Target = Annotated[Union[DiscoveryTarget, HubTopicTarget], Field(discriminator="kind")]


class ServiceConfiguration(BaseModel):
    model_config = ConfigDict(frozen=True)

    target: Optional[Target] = None
    secret: Optional[str] = None
    callbackOverride: Optional[str] = None
    discoveryOptions: DiscoveryOptions = DiscoveryOptions()
    subscriptionTransportConfig: TransportConfig = TransportConfig()
    leaseSeconds: Optional[int] = Field(default=None, gt=0)


class DiscoveryResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    hub: str
    topic: str


class SubscriptionRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    hub: str
    topic: str
    callback: str
    secret: Optional[str] = None
    leaseSeconds: Optional[int] = None
    mode: Literal["subscribe"] = "subscribe"


class Accepted(BaseModel):
    model_config = ConfigDict(frozen=True)

    hub: str
    topic: str
    callback: str


class ServiceEntry(BaseModel):
    serviceName: str
    path: Optional[Union[str, List[str]]] = None
    router: Optional[str] = None
    config: ServiceConfiguration = ServiceConfiguration()
