from __future__ import annotations

import re
from typing import Annotated, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator, model_validator

from .images import parse_image
from .labels import selector_matches, validate_labels
from .models import Deployment, PodTemplate, Protocol, Service, ServicePort, ServiceType
from .settings import settings

NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")


def _check_name(v: str) -> str:
    if not NAME_RE.match(v):
        raise ValueError("Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars).")
    return v


def _check_labels(v: dict[str, str]) -> dict[str, str]:
    validate_labels(v)
    return v


DnsName = Annotated[str, AfterValidator(_check_name)]
Labels = Annotated[dict[str, str], AfterValidator(_check_labels)]


class _Descriptor(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class LabelSelector(_Descriptor):
    match_labels: Labels = Field(..., alias="matchLabels", min_length=1)


class ContainerPortSpec(_Descriptor):
    container_port: int = Field(settings.container_port, alias="containerPort", ge=1, le=65535)


class ContainerSpec(_Descriptor):
    name: str | None = None
    image: str = Field(..., description="Image reference, name[:tag][@digest]")
    ports: list[ContainerPortSpec] = Field(default_factory=list)

    @field_validator("image")
    @classmethod
    def check_image(cls, v: str) -> str:
        parse_image(v)
        return v


class PodSpec(_Descriptor):
    containers: list[ContainerSpec] = Field(..., min_length=1, max_length=1)


class TemplateMetadata(_Descriptor):
    labels: Labels = Field(default_factory=dict)


class PodTemplateSpec(_Descriptor):
    metadata: TemplateMetadata = Field(default_factory=TemplateMetadata)
    spec: PodSpec


class DeploymentDescriptor(_Descriptor):
    kind: Literal["Deployment"] | None = None
    name: DnsName = Field(..., description="Deployment name (dns-safe)")
    replicas: int = Field(1, ge=0, le=100)
    selector: LabelSelector
    template: PodTemplateSpec

    @model_validator(mode="after")
    def check_selector_subset(self) -> "DeploymentDescriptor":
        if not selector_matches(self.selector.match_labels, self.template.metadata.labels):
            raise ValueError("template.metadata.labels must include every selector.matchLabels entry")
        return self

    def to_deployment(self) -> Deployment:
        container = self.template.spec.containers[0]
        port = container.ports[0].container_port if container.ports else settings.container_port
        return Deployment(
            name=self.name,
            desired_replicas=self.replicas,
            selector=dict(self.selector.match_labels),
            template=PodTemplate(
                labels=dict(self.template.metadata.labels),
                image=parse_image(container.image),
                container_port=port,
            ),
        )


class ServicePortSpec(_Descriptor):
    protocol: Protocol = Protocol.TCP
    port: int = Field(settings.service_port, ge=1, le=65535)
    target_port: int = Field(settings.container_port, alias="targetPort", ge=1, le=65535)
    node_port: int | None = Field(None, alias="nodePort")

    @field_validator("node_port")
    @classmethod
    def check_node_port_range(cls, v: int | None) -> int | None:
        if v is not None and not (settings.node_port_min <= v <= settings.node_port_max):
            raise ValueError(f"nodePort must be within {settings.node_port_min}-{settings.node_port_max}")
        return v


class ServiceDescriptor(_Descriptor):
    kind: Literal["Service"] | None = None
    name: DnsName
    type: ServiceType = ServiceType.CLUSTER_INTERNAL
    selector: Labels = Field(..., min_length=1)
    ports: list[ServicePortSpec] = Field(..., min_length=1)

    @model_validator(mode="after")
    def check_ports(self) -> "ServiceDescriptor":
        seen: set[tuple[Protocol, int]] = set()
        for p in self.ports:
            if (p.protocol, p.port) in seen:
                raise ValueError(f"duplicate port mapping {p.protocol.value}/{p.port}")
            seen.add((p.protocol, p.port))
            if p.node_port is not None and not self.type.uses_node_ports:
                raise ValueError(f"nodePort is not allowed for {self.type.value} services")
        return self

    def to_service(self) -> Service:
        return Service(
            name=self.name,
            selector=dict(self.selector),
            type=self.type,
            ports=tuple(
                ServicePort(port=p.port, target_port=p.target_port, protocol=p.protocol, node_port=p.node_port)
                for p in self.ports
            ),
        )


class ScaleRequest(BaseModel):
    replicas: int = Field(..., ge=0, le=100)


class LabelsRequest(BaseModel):
    labels: Labels
