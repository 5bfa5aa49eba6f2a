"""
Camera intrinsic model variants

Every supported model is a member of ``CameraModel`` and has exactly one entry
in ``CAMERA_MODEL_TABLE`` describing its parameter layout and distortion
function. Parameter vectors always start with ``[focal, ppx, ppy]``; the
remaining entries are distortion coefficients.

Projection of a camera-frame point X_c:
    x = X_c[:2] / X_c[2]
    x_d = distort(x, k)
    u = f * x_d + pp
"""

import numpy as np
from enum import Enum
from typing import Callable, Dict, Tuple, Union
from dataclasses import dataclass

FOCAL_INDEX = 0
PRINCIPAL_POINT_INDICES = (1, 2)
DISTORTION_OFFSET = 3

# Radii below this are treated as the optical axis
_EPS = 1e-12


class UnsupportedCameraModelError(ValueError):
    """Raised when an intrinsic variant has no residual implementation"""


class CameraModel(Enum):
    """Supported intrinsic model variants"""
    PINHOLE = "pinhole"
    PINHOLE_RADIAL_K1 = "pinhole_radial_k1"
    PINHOLE_RADIAL_K3 = "pinhole_radial_k3"
    PINHOLE_BROWN_T2 = "pinhole_brown_t2"
    PINHOLE_FISHEYE = "pinhole_fisheye"

    @classmethod
    def parse(cls, value: Union["CameraModel", str]) -> "CameraModel":
        """Accept a member, its value or its name (case-insensitive)"""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.strip()
            try:
                return cls(key.lower())
            except ValueError:
                pass
            if key.upper() in cls.__members__:
                return cls.__members__[key.upper()]
        raise UnsupportedCameraModelError(f"Unsupported camera model: {value!r}")


def _no_distortion(xy: np.ndarray, k: np.ndarray) -> np.ndarray:
    return xy


def _radial_k1(xy: np.ndarray, k: np.ndarray) -> np.ndarray:
    r2 = np.sum(xy * xy, axis=-1, keepdims=True)
    return xy * (1.0 + k[0] * r2)


def _radial_k3(xy: np.ndarray, k: np.ndarray) -> np.ndarray:
    r2 = np.sum(xy * xy, axis=-1, keepdims=True)
    radial = 1.0 + r2 * (k[0] + r2 * (k[1] + r2 * k[2]))
    return xy * radial


def _brown_t2(xy: np.ndarray, k: np.ndarray) -> np.ndarray:
    x = xy[..., 0]
    y = xy[..., 1]
    r2 = x * x + y * y
    radial = 1.0 + r2 * (k[0] + r2 * (k[1] + r2 * k[2]))
    t1, t2 = k[3], k[4]
    dx = t2 * (r2 + 2.0 * x * x) + 2.0 * t1 * x * y
    dy = t1 * (r2 + 2.0 * y * y) + 2.0 * t2 * x * y
    return np.stack([x * radial + dx, y * radial + dy], axis=-1)


def _fisheye(xy: np.ndarray, k: np.ndarray) -> np.ndarray:
    r = np.sqrt(np.sum(xy * xy, axis=-1, keepdims=True))
    theta = np.arctan(r)
    theta2 = theta * theta
    theta_d = theta * (1.0 + theta2 * (k[0] + theta2 * (k[1] + theta2 * (k[2] + theta2 * k[3]))))
    safe_r = np.where(r > _EPS, r, 1.0)
    scale = np.where(r > _EPS, theta_d / safe_r, 1.0)
    return xy * scale


@dataclass(frozen=True)
class CameraModelSpec:
    """Parameter layout and distortion function of one model variant"""

    model: CameraModel
    param_names: Tuple[str, ...]
    distort: Callable[[np.ndarray, np.ndarray], np.ndarray]

    @property
    def num_params(self) -> int:
        return len(self.param_names)

    @property
    def focal_indices(self) -> Tuple[int, ...]:
        return (FOCAL_INDEX,)

    @property
    def principal_point_indices(self) -> Tuple[int, ...]:
        return PRINCIPAL_POINT_INDICES

    @property
    def distortion_indices(self) -> Tuple[int, ...]:
        return tuple(range(DISTORTION_OFFSET, self.num_params))

    def validate(self, params: np.ndarray) -> np.ndarray:
        params = np.asarray(params, dtype=np.float64).reshape(-1)
        if params.size != self.num_params:
            raise ValueError(
                f"Camera model {self.model.value} expects {self.num_params} parameters, "
                f"got {params.size}"
            )
        return params

    def distort_normalized(self, xy: np.ndarray, params: np.ndarray) -> np.ndarray:
        return self.distort(xy, params[DISTORTION_OFFSET:])

    def project(self, params: np.ndarray, point_cam: np.ndarray) -> np.ndarray:
        """Project camera-frame point(s) (..., 3) to pixels (..., 2)"""
        point_cam = np.asarray(point_cam, dtype=np.float64)
        z = point_cam[..., 2:3]
        z = np.where(np.abs(z) > _EPS, z, _EPS)
        xy = point_cam[..., :2] / z
        xy_d = self.distort_normalized(xy, params)
        return params[FOCAL_INDEX] * xy_d + params[1:3]


_BASE_NAMES = ("focal", "ppx", "ppy")

CAMERA_MODEL_TABLE: Dict[CameraModel, CameraModelSpec] = {
    CameraModel.PINHOLE: CameraModelSpec(
        CameraModel.PINHOLE, _BASE_NAMES, _no_distortion
    ),
    CameraModel.PINHOLE_RADIAL_K1: CameraModelSpec(
        CameraModel.PINHOLE_RADIAL_K1, _BASE_NAMES + ("k1",), _radial_k1
    ),
    CameraModel.PINHOLE_RADIAL_K3: CameraModelSpec(
        CameraModel.PINHOLE_RADIAL_K3, _BASE_NAMES + ("k1", "k2", "k3"), _radial_k3
    ),
    CameraModel.PINHOLE_BROWN_T2: CameraModelSpec(
        CameraModel.PINHOLE_BROWN_T2, _BASE_NAMES + ("k1", "k2", "k3", "t1", "t2"), _brown_t2
    ),
    CameraModel.PINHOLE_FISHEYE: CameraModelSpec(
        CameraModel.PINHOLE_FISHEYE, _BASE_NAMES + ("k1", "k2", "k3", "k4"), _fisheye
    ),
}

_missing = set(CameraModel) - set(CAMERA_MODEL_TABLE)
if _missing:
    raise RuntimeError(f"Camera models without a table entry: {sorted(m.value for m in _missing)}")


def get_model_spec(model: Union[CameraModel, str]) -> CameraModelSpec:
    """Look up the table entry (raises UnsupportedCameraModelError)"""
    camera_model = CameraModel.parse(model)
    spec = CAMERA_MODEL_TABLE.get(camera_model)
    if spec is None:
        raise UnsupportedCameraModelError(f"No implementation for camera model {camera_model.value}")
    return spec
