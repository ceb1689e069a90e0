"""Block-diagonal inverse hybridization matrix with fast updates.

For every block b of flavors connected by the hybridization function the
walker keeps

    D_b[i, j] = Δ(τ_{c†_i} - τ_{c_j}),      M_b = D_b⁻¹,

over the hybridized creators (rows) and annihilators (columns) of the
block, stored in insertion order. Proposals return det(D_new)/det(D_old)
without touching the stored state; exactly one commit() or rollback()
must follow each ratio query.

Update formulas (n×n current block, k changed operators):
    insertion       rank-k Schur complement   O(n² k)
    removal         rank-k Schur complement   O(n² k)
    row/col change  Sherman-Morrison          O(n²)
    anything else   from scratch              O(n³)

Every rebuild_interval commits the incremental inverse and determinant
are compared with a from-scratch evaluation and replaced by it.
"""

import math
from typing import Dict, List, Optional, Sequence, Tuple

import torch

from cthybTensor.core.scaled import ScaledNumber
from cthybTensor.ctqmc.operators import Psi, count_inversions


def _permutation_parity(order: Sequence[int]) -> int:
    return -1 if count_inversions(order) % 2 else 1


def scaled_determinant(matrix: torch.Tensor) -> ScaledNumber:
    """det(matrix) as a ScaledNumber (no overflow for large matrices)."""
    if matrix.shape[0] == 0:
        return ScaledNumber.one()
    sign, logabs = torch.linalg.slogdet(matrix)
    logabs = logabs.item()
    if not math.isfinite(logabs):
        return ScaledNumber(0.0)
    log2 = logabs / math.log(2.0)
    exponent = math.floor(log2)
    return ScaledNumber(sign.item() * 2.0 ** (log2 - exponent), exponent)


class DeterminantBlock:
    """Inverse matrix of one flavor block.

    Attributes:
        flavors: Flavors of the block
        creators: Row operators in storage order
        annihilators: Column operators in storage order
        inv: M = D⁻¹, shape (n, n), indexed [annihilator, creator]
        det: det(D) in storage order
    """

    def __init__(self, flavors: Sequence[int], dtype: torch.dtype) -> None:
        self.flavors = list(flavors)
        self.dtype = dtype
        self.creators: List[Psi] = []
        self.annihilators: List[Psi] = []
        self.inv = torch.zeros((0, 0), dtype=dtype)
        self.det = ScaledNumber.one()

    @property
    def size(self) -> int:
        return len(self.creators)

    def sorted_determinant(self) -> ScaledNumber:
        """det(D) with rows and columns in ascending time order."""
        row_order = sorted(range(self.size), key=lambda i: self.creators[i].key)
        col_order = sorted(range(self.size), key=lambda j: self.annihilators[j].key)
        return self.det * (_permutation_parity(row_order) * _permutation_parity(col_order))


class _Pending:
    """Result of a proposal waiting for commit()."""

    __slots__ = ("block", "creators", "annihilators", "inv", "det")

    def __init__(self, block, creators, annihilators, inv, det):
        self.block = block
        self.creators = creators
        self.annihilators = annihilators
        self.inv = inv
        self.det = det


class DeterminantMatrix:
    """
    Inverse hybridization matrices over all flavor blocks.

    Attributes:
        hybridization: HybridizationFunction collaborator (not owned)
        blocks: DeterminantBlock per connected flavor group
        rebuild_interval: Commits between consistency checks (0 disables)
        tolerance: Relative tolerance of the consistency check
    """

    def __init__(
        self,
        hybridization,
        blocks: Optional[List[List[int]]] = None,
        rebuild_interval: int = 100,
        tolerance: float = 1e-8,
        verbose: bool = False,
    ) -> None:
        self.hybridization = hybridization
        block_flavors = blocks if blocks is not None else hybridization.connected_blocks()
        self.blocks = [DeterminantBlock(fl, hybridization.dtype) for fl in block_flavors]
        self._flavor_to_block: Dict[int, int] = {}
        for ib, flavors in enumerate(block_flavors):
            for f in flavors:
                self._flavor_to_block[f] = ib
        if sorted(self._flavor_to_block) != list(range(hybridization.n_flavors)):
            raise ValueError(f"Blocks {block_flavors} do not partition {hybridization.n_flavors} flavors")
        self.rebuild_interval = rebuild_interval
        self.tolerance = tolerance
        self.verbose = verbose
        self._pending: Optional[List[_Pending]] = None
        self._n_commits = 0
        self.n_rebuilds_needed = 0

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def block_of(self, flavor: int) -> int:
        return self._flavor_to_block[flavor]

    @property
    def size(self) -> int:
        return sum(b.size for b in self.blocks)

    def creators(self) -> List[Psi]:
        return [op for b in self.blocks for op in b.creators]

    def annihilators(self) -> List[Psi]:
        return [op for b in self.blocks for op in b.annihilators]

    def determinant_as_product_per_block(self) -> List[ScaledNumber]:
        """Per-block determinants (time-sorted rows and columns)."""
        return [b.sorted_determinant() for b in self.blocks]

    def determinant(self) -> ScaledNumber:
        result = ScaledNumber.one()
        for d in self.determinant_as_product_per_block():
            result = result * d
        return result

    def operator_list(self) -> List[Psi]:
        """Pairing order [c†₁ c₁ c†₂ c₂ …] of the weight, block by block."""
        ops = []
        for b in self.blocks:
            creators = sorted(b.creators)
            annihilators = sorted(b.annihilators)
            for cdag, c in zip(creators, annihilators):
                ops.append(cdag)
                ops.append(c)
        return ops

    # ------------------------------------------------------------------
    # Proposals
    # ------------------------------------------------------------------

    def ratio_insert(self, creators: Sequence[Psi], annihilators: Sequence[Psi]):
        """det ratio for inserting creators and annihilators."""
        return self.ratio_update((), list(creators) + list(annihilators))

    def ratio_remove(self, creators: Sequence[Psi], annihilators: Sequence[Psi]):
        """det ratio for removing creators and annihilators."""
        return self.ratio_update(list(creators) + list(annihilators), ())

    def ratio_shift(self, op: Psi, new_time: float):
        """det ratio for moving one operator to new_time."""
        return self.ratio_update([op], [op.with_time(new_time)])

    def ratio_update(self, removed: Sequence[Psi], added: Sequence[Psi]):
        """det(D_new)/det(D_old) for a general replacement of operators.

        Args:
            removed: Hybridized operators leaving the matrix
            added: Operators entering the matrix

        Returns:
            Ratio as a Python float/complex (0.0 if the new matrix is singular
            or a block becomes non-square)
        """
        if self._pending is not None:
            raise RuntimeError("commit() or rollback() must follow each ratio query")

        per_block: Dict[int, Tuple[list, list, list, list]] = {}
        for op in removed:
            entry = per_block.setdefault(self.block_of(op.flavor), ([], [], [], []))
            entry[0 if op.is_creator else 1].append(op)
        for op in added:
            entry = per_block.setdefault(self.block_of(op.flavor), ([], [], [], []))
            entry[2 if op.is_creator else 3].append(op)

        pending = []
        ratio = 1.0
        for ib, (rem_c, rem_a, add_c, add_a) in per_block.items():
            block = self.blocks[ib]
            if block.size - len(rem_c) + len(add_c) != block.size - len(rem_a) + len(add_a):
                ratio = 0.0
                pending = []
                break
            result = self._block_update(block, rem_c, rem_a, add_c, add_a)
            if result is None:
                ratio = 0.0
                pending = []
                break
            block_ratio, new_pending = result
            ratio = ratio * block_ratio
            pending.append(new_pending)
            if ratio == 0.0:
                break
        self._pending = pending if ratio != 0.0 else []
        return ratio

    def commit(self) -> None:
        if self._pending is None:
            raise RuntimeError("commit() without a pending proposal")
        for p in self._pending:
            p.block.creators = p.creators
            p.block.annihilators = p.annihilators
            p.block.inv = p.inv
            p.block.det = p.det
        self._pending = None
        self._n_commits += 1
        if self.rebuild_interval and self._n_commits % self.rebuild_interval == 0:
            if not self.check_consistency(self.tolerance, rebuild=True) and self.verbose:
                print("Warning: determinant matrix drifted from from-scratch value, rebuilt")

    def rollback(self) -> None:
        if self._pending is None:
            raise RuntimeError("rollback() without a pending proposal")
        self._pending = None

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    # ------------------------------------------------------------------
    # Block kernels
    # ------------------------------------------------------------------

    def _block_update(self, block, rem_c, rem_a, add_c, add_a):
        if not rem_c and not rem_a:
            return self._insert(block, add_c, add_a)
        if not add_c and not add_a:
            return self._remove(block, rem_c, rem_a)
        if len(rem_c) == 1 and len(add_c) == 1 and not rem_a and not add_a:
            return self._replace_row(block, rem_c[0], add_c[0])
        if len(rem_a) == 1 and len(add_a) == 1 and not rem_c and not add_c:
            return self._replace_column(block, rem_a[0], add_a[0])
        creators = [op for op in block.creators if op not in rem_c] + list(add_c)
        annihilators = [op for op in block.annihilators if op not in rem_a] + list(add_a)
        return self._from_scratch(block, creators, annihilators)

    def _from_scratch(self, block, creators, annihilators):
        D = self.hybridization.matrix(creators, annihilators)
        det = scaled_determinant(D)
        if det.is_zero() or not det.is_finite():
            return None
        inv = torch.linalg.inv(D) if D.shape[0] > 0 else D
        if block.det.is_zero():
            return None
        ratio = (det / block.det).to_number()
        return ratio, _Pending(block, creators, annihilators, inv, det)

    def _insert(self, block, add_c, add_a):
        k = len(add_c)
        if k == 0:
            return 1.0, _Pending(block, block.creators, block.annihilators, block.inv, block.det)
        hyb = self.hybridization
        M = block.inv
        B = hyb.matrix(block.creators, add_a)            # n × k
        C = hyb.matrix(add_c, block.annihilators)        # k × n
        E = hyb.matrix(add_c, add_a)                     # k × k
        MB = M @ B
        S = E - C @ MB
        det_S = scaled_determinant(S)
        if det_S.is_zero() or not det_S.is_finite():
            return None
        S_inv = torch.linalg.inv(S)
        CM = C @ M
        n = block.size
        new_inv = torch.empty((n + k, n + k), dtype=M.dtype)
        new_inv[:n, :n] = M + MB @ S_inv @ CM
        new_inv[:n, n:] = -MB @ S_inv
        new_inv[n:, :n] = -S_inv @ CM
        new_inv[n:, n:] = S_inv
        return det_S.to_number(), _Pending(
            block,
            block.creators + list(add_c),
            block.annihilators + list(add_a),
            new_inv,
            block.det * det_S,
        )

    def _remove(self, block, rem_c, rem_a):
        k = len(rem_c)
        n = block.size
        try:
            rows = [block.creators.index(op) for op in rem_c]
            cols = [block.annihilators.index(op) for op in rem_a]
        except ValueError:
            raise ValueError("Removed operator is not in the determinant matrix") from None
        keep_rows = [i for i in range(n) if i not in rows]
        keep_cols = [j for j in range(n) if j not in cols]
        row_order = keep_rows + rows
        col_order = keep_cols + cols
        parity = _permutation_parity(row_order) * _permutation_parity(col_order)
        M = block.inv[col_order][:, row_order]
        m = n - k
        M22 = M[m:, m:]
        det_M22 = scaled_determinant(M22)
        if det_M22.is_zero() or not det_M22.is_finite():
            return None
        if m > 0:
            new_inv = M[:m, :m] - M[:m, m:] @ torch.linalg.solve(M22, M[m:, :m])
        else:
            new_inv = torch.zeros((0, 0), dtype=M.dtype)
        ratio = det_M22 * parity
        return ratio.to_number(), _Pending(
            block,
            [block.creators[i] for i in keep_rows],
            [block.annihilators[j] for j in keep_cols],
            new_inv,
            block.det * ratio,
        )

    def _replace_row(self, block, old_op, new_op):
        i = block.creators.index(old_op)
        M = block.inv
        row = self.hybridization.matrix([new_op], block.annihilators)[0]
        ratio = torch.dot(row, M[:, i]).item()
        if ratio == 0.0 or not math.isfinite(abs(ratio)):
            return None
        rM = row @ M
        rM[i] -= 1.0
        new_inv = M - torch.outer(M[:, i], rM) / ratio
        creators = list(block.creators)
        creators[i] = new_op
        return ratio, _Pending(block, creators, block.annihilators, new_inv, block.det * ratio)

    def _replace_column(self, block, old_op, new_op):
        j = block.annihilators.index(old_op)
        M = block.inv
        col = self.hybridization.matrix(block.creators, [new_op])[:, 0]
        ratio = torch.dot(M[j, :], col).item()
        if ratio == 0.0 or not math.isfinite(abs(ratio)):
            return None
        Mc = M @ col
        Mc[j] -= 1.0
        new_inv = M - torch.outer(Mc, M[j, :]) / ratio
        annihilators = list(block.annihilators)
        annihilators[j] = new_op
        return ratio, _Pending(block, block.creators, annihilators, new_inv, block.det * ratio)

    # ------------------------------------------------------------------
    # Rebuild and checks
    # ------------------------------------------------------------------

    def rebuild(self, operators: Sequence[Psi]) -> bool:
        """Rebuild all blocks from scratch from hybridized operators.

        Returns:
            False if some block is singular or non-square
        """
        self._pending = None
        ok = True
        for ib, block in enumerate(self.blocks):
            members = [op for op in operators if self.block_of(op.flavor) == ib]
            block.creators = sorted(op for op in members if op.is_creator)
            block.annihilators = sorted(op for op in members if not op.is_creator)
            if block.size != len(block.annihilators):
                block.inv = torch.zeros((0, 0), dtype=block.dtype)
                block.det = ScaledNumber(0.0)
                ok = False
                continue
            D = self.hybridization.matrix(block.creators, block.annihilators)
            block.det = scaled_determinant(D)
            if block.det.is_zero():
                block.inv = torch.zeros_like(D)
                ok = False
            else:
                block.inv = torch.linalg.inv(D) if D.shape[0] > 0 else D
        return ok

    def check_consistency(self, tol: float = 1e-8, rebuild: bool = False) -> bool:
        """Compare incremental determinants and inverses with from-scratch values.

        Args:
            tol: Relative tolerance
            rebuild: Replace the incremental state by the from-scratch one

        Returns:
            True if all blocks agree within tol
        """
        consistent = True
        for block in self.blocks:
            D = self.hybridization.matrix(block.creators, block.annihilators)
            det = scaled_determinant(D)
            if not det.isclose(block.det, rel_tol=tol):
                consistent = False
            if D.shape[0] > 0 and not det.is_zero():
                inv = torch.linalg.inv(D)
                scale = inv.abs().max().item()
                if (inv - block.inv).abs().max().item() > tol * max(scale, 1.0) * 1e2:
                    consistent = False
                if rebuild:
                    block.inv = inv
                    block.det = det
        if not consistent:
            self.n_rebuilds_needed += 1
        return consistent
