from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional


class MalformedPodError(ValueError):
    """Raised when a pRPC pod descriptor does not have the expected shape."""


# Field name -> accepted JSON types for one pod descriptor. Every field is optional.
_POD_FIELD_TYPES = {
    'address': (str,),
    'is_public': (bool,),
    'last_seen_timestamp': (int,),
    'pubkey': (str,),
    'rpc_port': (int,),
    'storage_committed': (int,),
    'storage_usage_percent': (int, float),
    'storage_used': (int,),
    'uptime': (int,),
    'version': (str,),
}


@dataclass
class PodRaw:
    """One node descriptor as reported by a seed's get-pods-with-stats call."""
    address: Optional[str] = None
    is_public: Optional[bool] = None
    last_seen_timestamp: Optional[int] = None
    pubkey: Optional[str] = None
    rpc_port: Optional[int] = None
    storage_committed: Optional[int] = None
    storage_usage_percent: Optional[float] = None
    storage_used: Optional[int] = None
    uptime: Optional[int] = None
    version: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> 'PodRaw':
        if not isinstance(data, dict):
            raise MalformedPodError(f"pod descriptor must be an object, got {type(data).__name__}")
        values = {}
        for name, types in _POD_FIELD_TYPES.items():
            value = data.get(name)
            if value is None:
                continue
            # bool is an int subclass; only is_public may be a bool
            if isinstance(value, bool) and bool not in types:
                raise MalformedPodError(f"field '{name}' has unexpected type bool")
            if not isinstance(value, types):
                raise MalformedPodError(f"field '{name}' has unexpected type {type(value).__name__}")
            values[name] = value
        if 'storage_usage_percent' in values:
            values['storage_usage_percent'] = float(values['storage_usage_percent'])
        return cls(**values)

    @property
    def is_online(self) -> bool:
        return (self.uptime or 0) > 0


def parse_pod_list(value: Any) -> List[PodRaw]:
    """Parse a JSON list of pod descriptors, rejecting the whole list if any entry is malformed."""
    if not isinstance(value, list):
        raise MalformedPodError(f"expected a list of pods, got {type(value).__name__}")
    return [PodRaw.from_dict(item) for item in value]


@dataclass
class GeoData:
    lat: float
    lon: float
    country: str
    city: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class NodeRecord:
    """Current state of one pNode, keyed by pubkey. Written as a whole row."""
    pubkey: str
    ip: str
    version: Optional[str] = None
    status: Optional[str] = None
    last_seen: Optional[int] = None
    storage_used: Optional[int] = None
    storage_committed: Optional[int] = None
    storage_usage_percent: Optional[float] = None
    credits: Optional[int] = None
    latency_ms: Optional[int] = None
    country: Optional[str] = None
    city: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None

    @classmethod
    def from_row(cls, row) -> 'NodeRecord':
        return cls(**{key: row[key] for key in row.keys()})

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)

    @property
    def geo(self) -> Optional[GeoData]:
        if self.lat is None:
            return None
        return GeoData(
            lat=self.lat,
            lon=self.lon if self.lon is not None else 0.0,
            country=self.country or "",
            city=self.city or "",
        )

    def to_pod_dto(self) -> Dict[str, Any]:
        """Shape served by the /pods and /node endpoints."""
        geo = self.geo
        return {
            'pubkey': self.pubkey,
            'address': self.ip,
            # uptime and is_public are not persisted, so they are served empty
            'uptime': None,
            'storage_used': self.storage_used,
            'storage_committed': self.storage_committed,
            'storage_usage_percent': self.storage_usage_percent,
            'version': self.version,
            'last_seen_timestamp': self.last_seen,
            'is_public': None,
            'geo': geo.to_dict() if geo else None,
            'latency_ms': self.latency_ms,
        }
