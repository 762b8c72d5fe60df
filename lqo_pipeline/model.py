"""
Mapping Model Module
====================

Loading of the trained similarity-to-quality regression model.

The model is an opaque artifact exposing only predict(vector) -> float.
Two on-disk formats are accepted:
- libsvm text model files (svm_save_model output, epsilon/nu SVR)
- pickled regressors with a scikit-learn style predict() (.pkl/.pickle)

Loaded models are immutable, so predict() is reentrant.
"""

import logging
import math
import pickle
from pathlib import Path
from typing import Dict, List, Sequence

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_MODEL_PATH = Path(__file__).parent / "models" / "default_audio_model.txt"

PICKLE_SUFFIXES = (".pkl", ".pickle")

_REGRESSION_TYPES = ("epsilon_svr", "nu_svr")
_KERNEL_TYPES = ("linear", "polynomial", "rbf", "sigmoid")


class MappingModel:
    """Capability interface: feature vector in, scalar score out"""

    def predict(self, features: Sequence[float]) -> float:
        raise NotImplementedError


class LibsvmRegressionModel(MappingModel):
    """
    Support vector regression model read from a libsvm text file.

    prediction = sum_i(coef_i * K(x, sv_i)) - rho

    Features are 1-based sparse indices in the file; absent indices are
    zero, exactly as libsvm treats them.
    """

    def __init__(self, kernel_type: str, support_vectors: np.ndarray,
                 coefficients: np.ndarray, rho: float,
                 gamma: float = 0.0, coef0: float = 0.0, degree: int = 3,
                 svm_type: str = "nu_svr"):
        if kernel_type not in _KERNEL_TYPES:
            raise ValueError(f"Unsupported kernel_type: {kernel_type}")
        if support_vectors.shape[0] != coefficients.shape[0]:
            raise ValueError("Support vector and coefficient counts differ")

        self.svm_type = svm_type
        self.kernel_type = kernel_type
        self.gamma = float(gamma)
        self.coef0 = float(coef0)
        self.degree = int(degree)
        self.rho = float(rho)

        self.support_vectors = np.array(support_vectors, dtype=np.float64)
        self.coefficients = np.array(coefficients, dtype=np.float64)
        self.support_vectors.setflags(write=False)
        self.coefficients.setflags(write=False)

    @property
    def num_features(self) -> int:
        return self.support_vectors.shape[1]

    def _kernel(self, x: np.ndarray, svs: np.ndarray) -> np.ndarray:
        if self.kernel_type == "rbf":
            diff = svs - x
            return np.exp(-self.gamma * np.sum(diff * diff, axis=1))

        dot = svs @ x
        if self.kernel_type == "linear":
            return dot
        if self.kernel_type == "polynomial":
            return (self.gamma * dot + self.coef0) ** self.degree
        return np.tanh(self.gamma * dot + self.coef0)

    def predict(self, features: Sequence[float]) -> float:
        x = np.asarray(features, dtype=np.float64).ravel()
        svs = self.support_vectors

        # Pad whichever side is shorter with zeros (sparse semantics)
        if x.size < svs.shape[1]:
            x = np.pad(x, (0, svs.shape[1] - x.size))
        elif x.size > svs.shape[1]:
            svs = np.pad(svs, ((0, 0), (0, x.size - svs.shape[1])))

        return float(self.coefficients @ self._kernel(x, svs) - self.rho)

    @classmethod
    def from_file(cls, path: str) -> "LibsvmRegressionModel":
        """
        Parse a libsvm text model file.

        Args:
            path: Path to model file

        Returns:
            LibsvmRegressionModel

        Raises:
            OSError: file cannot be read
            ValueError: file is not a libsvm regression model
        """
        with open(path, "r") as f:
            lines = [line.strip() for line in f]

        header: Dict[str, List[str]] = {}
        sv_start = None
        for idx, line in enumerate(lines):
            if not line:
                continue
            if line == "SV":
                sv_start = idx + 1
                break
            key, *values = line.split()
            header[key] = values

        if sv_start is None:
            raise ValueError(f"No SV section in model file: {path}")

        svm_type = header.get("svm_type", [""])[0]
        if svm_type not in _REGRESSION_TYPES:
            raise ValueError(f"Not a regression model (svm_type={svm_type or 'missing'})")

        kernel_type = header.get("kernel_type", ["rbf"])[0]
        rho_values = header.get("rho")
        if not rho_values:
            raise ValueError("Model file has no rho")

        coefficients = []
        sparse_rows = []
        max_index = 0
        for line in lines[sv_start:]:
            if not line:
                continue
            coef, *pairs = line.split()
            row = {}
            for pair in pairs:
                index, value = pair.split(":")
                index = int(index)
                if index < 1:
                    raise ValueError(f"Invalid feature index {index}")
                row[index] = float(value)
                max_index = max(max_index, index)
            coefficients.append(float(coef))
            sparse_rows.append(row)

        if not coefficients:
            raise ValueError("Model file has no support vectors")

        total_sv = header.get("total_sv")
        if total_sv and int(total_sv[0]) != len(coefficients):
            raise ValueError(
                f"total_sv={total_sv[0]} but {len(coefficients)} support vectors present"
            )

        support_vectors = np.zeros((len(sparse_rows), max_index))
        for i, row in enumerate(sparse_rows):
            for index, value in row.items():
                support_vectors[i, index - 1] = value

        model = cls(
            kernel_type=kernel_type,
            support_vectors=support_vectors,
            coefficients=np.asarray(coefficients),
            rho=float(rho_values[0]),
            gamma=float(header.get("gamma", ["0"])[0]),
            coef0=float(header.get("coef0", ["0"])[0]),
            degree=int(header.get("degree", ["3"])[0]),
            svm_type=svm_type,
        )
        logger.debug(f"Loaded libsvm model {path}: {kernel_type}, {len(coefficients)} SVs, {max_index} features")
        return model


class PickledRegressionModel(MappingModel):
    """
    Wraps a pickled regressor (e.g. sklearn.svm.SVR).

    Only load pickles from trusted sources.
    """

    def __init__(self, estimator):
        if not callable(getattr(estimator, "predict", None)):
            raise ValueError(f"Pickled object {type(estimator).__name__} has no predict()")
        self.estimator = estimator

    def predict(self, features: Sequence[float]) -> float:
        x = np.asarray(features, dtype=np.float64).reshape(1, -1)
        return float(np.ravel(self.estimator.predict(x))[0])

    @classmethod
    def from_file(cls, path: str) -> "PickledRegressionModel":
        with open(path, "rb") as f:
            try:
                estimator = pickle.load(f)
            except (pickle.UnpicklingError, EOFError, AttributeError, ImportError) as e:
                raise ValueError(f"Cannot unpickle model: {e}") from e
        return cls(estimator)


def resolve_model_path(model_path: str) -> str:
    """Empty path selects the bundled default model"""
    if not model_path:
        return str(DEFAULT_MODEL_PATH)
    return str(Path(model_path).expanduser())


def load_model(model_path: str) -> MappingModel:
    """
    Load a mapping model from disk.

    Args:
        model_path: Path to a libsvm text model or a pickled regressor

    Returns:
        MappingModel

    Raises:
        OSError: file missing or unreadable
        ValueError: file content is not a usable model
    """
    path = Path(model_path)
    if not path.is_file():
        raise FileNotFoundError(f"Model file not found: {model_path}")

    if path.suffix.lower() in PICKLE_SUFFIXES:
        model = PickledRegressionModel.from_file(str(path))
    else:
        model = LibsvmRegressionModel.from_file(str(path))

    # Reject models that cannot score a perfect-similarity vector
    probe = model.predict(np.ones(32))
    if not math.isfinite(probe):
        raise ValueError(f"Model produced non-finite prediction: {probe}")

    logger.info(f"Mapping model loaded: {path.name} ({type(model).__name__})")
    return model
