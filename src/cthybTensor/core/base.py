"""BaseTensor class: labelled tensor representation for solver outputs."""

from typing import Optional, List
import torch


class BaseTensor:
    """
    Labelled tensor for Green's functions and correlation functions.

    All post-processed observables (G(τ), G(iωₙ), Legendre coefficients,
    two-time correlators) use this single class with semantic labels for
    each dimension.

    Attributes:
        tensor: Underlying PyTorch tensor data
        labels: Semantic labels for each dimension (e.g., ['tau', 'orb_i', 'orb_j'])
        mesh: Values of the first (mesh) dimension, e.g. τ points or iωₙ
        flavor_names: Physical names of flavors (e.g., ['up', 'down'])
        beta: Inverse temperature the object refers to
    """

    def __init__(
        self,
        tensor: torch.Tensor,
        labels: List[str],
        mesh: Optional[torch.Tensor] = None,
        flavor_names: Optional[List[str]] = None,
        beta: Optional[float] = None,
    ) -> None:
        """
        Initialize BaseTensor.

        Args:
            tensor: Underlying tensor data
            labels: Semantic labels for each dimension
            mesh: Mesh values along the first dimension, shape (tensor.shape[0],)
            flavor_names: Physical names of flavors
            beta: Inverse temperature
        """
        if len(labels) != tensor.ndim:
            raise ValueError(
                f"Number of labels ({len(labels)}) must match tensor.ndim ({tensor.ndim})"
            )
        if mesh is not None and mesh.shape[0] != tensor.shape[0]:
            raise ValueError(
                f"Mesh length ({mesh.shape[0]}) must match first dimension ({tensor.shape[0]})"
            )

        self.tensor = tensor
        self.labels = labels
        self.mesh = mesh
        self.flavor_names = flavor_names
        self.beta = beta

    def to(self, device: torch.device) -> "BaseTensor":
        """Move tensor to device (CPU/GPU)."""
        return BaseTensor(
            tensor=self.tensor.to(device),
            labels=self.labels,
            mesh=self.mesh.to(device) if self.mesh is not None else None,
            flavor_names=self.flavor_names,
            beta=self.beta,
        )

    def diagonal(self) -> torch.Tensor:
        """Flavor-diagonal part, shape (n_mesh, n_flavors).

        Raises:
            ValueError: If the last two labels are not an orbital pair
        """
        if self.labels[-2:] != ["orb_i", "orb_j"]:
            raise ValueError(f"No orbital pair in labels {self.labels}")
        return torch.diagonal(self.tensor, dim1=-2, dim2=-1)

    def transform_flavors(self, rotation: torch.Tensor) -> "BaseTensor":
        """Rotate the flavor indices: A → U A U†.

        Args:
            rotation: Unitary matrix U, shape (n_flavors, n_flavors)

        Returns:
            New BaseTensor in the rotated basis
        """
        if self.labels[-2:] != ["orb_i", "orb_j"]:
            raise ValueError(f"No orbital pair in labels {self.labels}")
        U = rotation.to(dtype=torch.complex128, device=self.tensor.device)
        data = self.tensor.to(torch.complex128)
        rotated = U @ data @ U.conj().T
        return BaseTensor(
            tensor=rotated,
            labels=self.labels,
            mesh=self.mesh,
            flavor_names=self.flavor_names,
            beta=self.beta,
        )

    @property
    def shape(self) -> torch.Size:
        """Return tensor shape."""
        return self.tensor.shape

    @property
    def ndim(self) -> int:
        """Return number of dimensions."""
        return self.tensor.ndim

    @property
    def dtype(self) -> torch.dtype:
        """Return tensor dtype."""
        return self.tensor.dtype

    def __repr__(self) -> str:
        return f"BaseTensor(shape={self.shape}, labels={self.labels}, dtype={self.dtype})"
