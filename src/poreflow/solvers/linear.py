import logging
import threading
import typing

import numpy as np
import pyamg  # type: ignore[import-untyped]
from scipy.sparse import csr_array, csr_matrix, diags  # type: ignore[import-untyped]
from scipy.sparse.linalg import (  # type: ignore[import-untyped]
    LinearOperator,
    bicgstab,
    cg,
    gmres,
    lgmres,
    spilu,
    spsolve,
)

from poreflow._precision import get_floating_point_info
from poreflow.errors import PreconditionerError, SolverError, ValidationError
from poreflow.types import (
    Preconditioner,
    PreconditionerFactory,
    Solver,
    SolverFunc,
)

logger = logging.getLogger(__name__)

__all__ = [
    "build_amg_preconditioner",
    "build_diagonal_preconditioner",
    "build_ilu_preconditioner",
    "preconditioner_factory",
    "list_preconditioner_factories",
    "get_preconditioner_factory",
    "solver_func",
    "list_solver_funcs",
    "get_solver_func",
    "solve_linear_system",
]


def build_amg_preconditioner(
    A_csr: typing.Union[csr_array, csr_matrix], cycle: str = "V", **kwargs: typing.Any
) -> LinearOperator:
    """
    Creates an Algebraic Multigrid (AMG) preconditioner using PyAMG.

    Smoothed aggregation suits the symmetric positive definite pressure
    systems of pore networks.

    :param A_csr: The coefficient matrix in CSR format.
    :param cycle: Multigrid cycle type ('V', 'W', 'F').
    :param kwargs: Additional arguments for `pyamg.smoothed_aggregation_solver`.
    :return: A SciPy `LinearOperator` that represents the AMG preconditioner.
    """
    A = csr_matrix(A_csr)
    # pyamg's compiled kernels take 32-bit sparse indices only
    A.indices = A.indices.astype(np.int32)
    A.indptr = A.indptr.astype(np.int32)
    ml_solver = pyamg.smoothed_aggregation_solver(A, **kwargs)
    return ml_solver.aspreconditioner(cycle=cycle)


def build_diagonal_preconditioner(
    A_csr: typing.Union[csr_array, csr_matrix],
) -> LinearOperator:
    """
    Creates a diagonal (Jacobi) preconditioner from the coefficient matrix.

    :param A_csr: The coefficient matrix in CSR format.
    :return: A SciPy `LinearOperator` that represents the diagonal preconditioner.
    """
    diag_elements = A_csr.diagonal()
    epsilon = get_floating_point_info().eps
    threshold = max(1e-30, 100 * epsilon * float(np.abs(diag_elements).max(initial=0.0)))
    diag_elements = np.where(np.abs(diag_elements) < threshold, 1.0, diag_elements)
    M_diag = diags(1.0 / diag_elements, format="csr")
    return LinearOperator(shape=A_csr.shape, matvec=M_diag.dot)  # type: ignore[arg-type]


def build_ilu_preconditioner(
    A_csr: typing.Union[csr_array, csr_matrix], **kwargs: typing.Any
) -> LinearOperator:
    """
    Creates an Incomplete LU (ILU) preconditioner using `spilu`.

    :param A_csr: The coefficient matrix in CSR format. It is converted to CSC for `spilu`.
    :return: A SciPy `LinearOperator` that solves the preconditioned system.
    """
    A_csc = A_csr.tocsc()
    kwargs.setdefault("drop_tol", 1e-4)
    kwargs.setdefault("fill_factor", 10)
    ilu_factor = spilu(A_csc, **kwargs)
    return LinearOperator(shape=A_csc.shape, matvec=ilu_factor.solve)  # type: ignore[arg-type]


def _spsolve(
    A: typing.Any,
    b: typing.Any,
    x0: typing.Optional[typing.Any],
    *,
    rtol: float,
    atol: float,
    maxiter: typing.Optional[int],
    M: typing.Optional[typing.Any],
    callback: typing.Optional[typing.Callable[[np.typing.NDArray], None]],
) -> typing.Tuple[np.typing.NDArray, int]:
    # SuperLU. scipy ships no sparse Cholesky.
    return spsolve(csr_matrix(A).tocsc(), b), 0


def _lgmres(
    A: typing.Any,
    b: typing.Any,
    x0: typing.Optional[typing.Any],
    *,
    rtol: float,
    atol: float,
    maxiter: typing.Optional[int],
    M: typing.Optional[typing.Any],
    callback: typing.Optional[typing.Callable[[np.typing.NDArray], None]],
    inner_m: int = 30,
    outer_k: int = 3,
) -> typing.Tuple[np.typing.NDArray, int]:
    """
    LGMRES solver with configurable inner/outer iteration parameters.

    :param inner_m: Number of inner GMRES iterations per restart.
    :param outer_k: Number of vectors to carry between inner GMRES iterations.
    """
    return lgmres(  # type: ignore[return-value]
        A,
        b,
        x0=x0,
        M=M,
        rtol=rtol,
        atol=atol,
        maxiter=maxiter,
        callback=callback,
        inner_m=inner_m,
        outer_k=outer_k,
    )


_preconditioner_registry_lock = threading.Lock()
_PRECONDITIONER_FACTORIES: typing.Dict[str, PreconditionerFactory] = {
    "amg": build_amg_preconditioner,
    "ilu": build_ilu_preconditioner,
    "diagonal": build_diagonal_preconditioner,
}
"""Registered preconditioner factory functions."""

_solver_registry_lock = threading.Lock()
_SOLVER_FUNCS: typing.Dict[str, SolverFunc] = {
    "direct": _spsolve,
    "cg": cg,
    "bicgstab": bicgstab,
    "gmres": gmres,
    "lgmres": _lgmres,
}
"""Registered solver functions."""


@typing.overload
def preconditioner_factory(func: PreconditionerFactory) -> PreconditionerFactory: ...


@typing.overload
def preconditioner_factory(
    func: None = None,
    name: typing.Optional[str] = None,
    override: bool = False,
) -> typing.Callable[[PreconditionerFactory], PreconditionerFactory]: ...


def preconditioner_factory(
    func: typing.Optional[PreconditionerFactory] = None,
    name: typing.Optional[str] = None,
    override: bool = False,
) -> typing.Union[
    PreconditionerFactory,
    typing.Callable[[PreconditionerFactory], PreconditionerFactory],
]:
    """
    Decorator to register a preconditioner factory function.

    A preconditioner factory takes a CSR matrix and returns a SciPy
    `LinearOperator` representing the preconditioner.

    :param func: The preconditioner factory function to decorate.
    :param name: Optional registration name. Defaults to the function's `__name__`.
    :param override: If True, allows overriding an existing preconditioner factory.
    :return: The original function, unmodified.
    """

    def decorator(func: PreconditionerFactory) -> PreconditionerFactory:
        with _preconditioner_registry_lock:
            key = name or getattr(func, "__name__", None)
            if not key:
                raise ValidationError(
                    "Preconditioner factory must have a `__name__` attribute or a name must be provided."
                )
            if not override and key in _PRECONDITIONER_FACTORIES:
                raise ValidationError(
                    f"Preconditioner factory '{key}' is already registered. "
                    f"Use `override=True` to replace it."
                )
            _PRECONDITIONER_FACTORIES[key] = func
        return func

    if func is not None:
        return decorator(func)
    return decorator


def list_preconditioner_factories() -> typing.List[str]:
    """List the names of all registered preconditioner factories."""
    with _preconditioner_registry_lock:
        return list(_PRECONDITIONER_FACTORIES.keys())


def get_preconditioner_factory(name: str) -> PreconditionerFactory:
    """
    Get a registered preconditioner factory by name.

    :raises ValidationError: If the preconditioner factory is unknown.
    """
    with _preconditioner_registry_lock:
        if name not in _PRECONDITIONER_FACTORIES:
            raise ValidationError(
                f"Unknown preconditioner factory: {name!r}. "
                f"Available preconditioners: {list(_PRECONDITIONER_FACTORIES.keys())}"
            )
        return _PRECONDITIONER_FACTORIES[name]


@typing.overload
def solver_func(func: SolverFunc) -> SolverFunc: ...


@typing.overload
def solver_func(
    func: None = None,
    name: typing.Optional[str] = None,
    override: bool = False,
) -> typing.Callable[[SolverFunc], SolverFunc]: ...


def solver_func(
    func: typing.Optional[SolverFunc] = None,
    name: typing.Optional[str] = None,
    override: bool = False,
) -> typing.Union[SolverFunc, typing.Callable[[SolverFunc], SolverFunc]]:
    """
    Decorator to register a solver function.

    A solver function follows the SciPy iterative solver interface and
    returns `(x, info)` with `info == 0` on convergence.

    :param func: The solver function to decorate.
    :param name: Optional registration name. Defaults to the function's `__name__`.
    :param override: If True, allows overriding an existing solver function.
    :return: The original function, unmodified.
    """

    def decorator(func: SolverFunc) -> SolverFunc:
        with _solver_registry_lock:
            key = name or getattr(func, "__name__", None)
            if not key:
                raise ValidationError(
                    "Solver function must have a `__name__` attribute or a name must be provided."
                )
            if not override and key in _SOLVER_FUNCS:
                raise ValidationError(
                    f"Solver function '{key}' is already registered. "
                    f"Use `override=True` to replace it."
                )
            _SOLVER_FUNCS[key] = func
        return func

    if func is not None:
        return decorator(func)
    return decorator


def list_solver_funcs() -> typing.List[str]:
    """List the names of all registered solver functions."""
    with _solver_registry_lock:
        return list(_SOLVER_FUNCS.keys())


def get_solver_func(name: str) -> SolverFunc:
    """
    Get a registered solver function by name.

    :raises ValidationError: If the solver is unknown.
    """
    with _solver_registry_lock:
        if name not in _SOLVER_FUNCS:
            raise ValidationError(
                f"Unknown solver function: {name!r}. "
                f"Available solvers: {list(_SOLVER_FUNCS.keys())}"
            )
        return _SOLVER_FUNCS[name]


def _get_preconditioner(
    A_csr: typing.Union[csr_array, csr_matrix],
    preconditioner: typing.Optional[Preconditioner],
) -> typing.Optional[LinearOperator]:
    if isinstance(preconditioner, (type(None), LinearOperator)):
        return preconditioner
    if isinstance(preconditioner, str):
        return get_preconditioner_factory(preconditioner)(A_csr)
    if callable(preconditioner):
        factory = typing.cast(PreconditionerFactory, preconditioner)
        return factory(A_csr)
    raise ValidationError(f"Invalid preconditioner: {preconditioner!r}")


def _get_solver_funcs(
    solver: typing.Union[Solver, typing.Iterable[Solver]],
) -> typing.List[SolverFunc]:
    if isinstance(solver, str):
        return [get_solver_func(solver)]
    if callable(solver):
        return [typing.cast(SolverFunc, solver)]
    if isinstance(solver, (list, tuple)):
        solver_funcs = []
        for s in solver:
            if isinstance(s, str):
                solver_funcs.append(get_solver_func(s))
            elif callable(s):
                solver_funcs.append(typing.cast(SolverFunc, s))
            else:
                raise ValidationError(f"Unknown solver type in sequence: {s!r}")
        return solver_funcs
    raise ValidationError("solver must be a string, callable, or a sequence of strings.")


def solve_linear_system(
    A_csr: typing.Union[csr_array, csr_matrix],
    b: np.typing.NDArray,
    max_iterations: int = 500,
    rtol: typing.Optional[float] = None,
    atol: typing.Optional[float] = None,
    solver: typing.Union[Solver, typing.Iterable[Solver]] = "direct",
    preconditioner: typing.Optional[Preconditioner] = "amg",
    fallback_to_direct: bool = True,
) -> np.typing.NDArray:
    """
    Solves the linear system A·x = b, trying each configured solver in turn.

    The direct solver needs no preconditioner. Iterative solvers are run with
    the configured preconditioner; when every one of them fails and
    `fallback_to_direct` is set, a sparse LU solve is attempted.

    :param A_csr: Coefficient matrix in CSR format.
    :param b: Right-hand side vector.
    :param max_iterations: Maximum number of iterations for each iterative solver.
    :param rtol: Relative tolerance for convergence.
    :param atol: Absolute tolerance for convergence.
    :param solver: Solver name, callable, or a sequence of these.
    :param preconditioner: Preconditioner name, factory, operator, or None.
    :param fallback_to_direct: Whether to fall back to the direct solver.
    :return: The solution vector.
    :raises PreconditionerError: If the preconditioner cannot be built and `fallback_to_direct` is not set.
    :raises SolverError: If no solver produces a finite converged solution.
    """
    solver_funcs = _get_solver_funcs(solver)
    is_direct = all(func is _spsolve for func in solver_funcs)
    M = None
    if not is_direct:
        try:
            M = _get_preconditioner(A_csr, preconditioner)
        except ValidationError:
            raise
        except Exception as exc:
            if not fallback_to_direct:
                raise PreconditionerError(f"Error building preconditioner: {exc}") from exc
            logger.warning(f"Error building preconditioner, solving directly: {exc}")
            return _solve_direct(A_csr, b)

    b_norm = float(np.linalg.norm(b))
    rtol = rtol if rtol is not None else 1e-10
    atol = atol if atol is not None else rtol * b_norm

    for func in solver_funcs:
        try:
            x, info = func(
                A_csr,
                b,
                None,
                rtol=rtol,
                atol=atol,
                maxiter=max_iterations,
                M=None if func is _spsolve else M,
                callback=None,
            )
        except (ValueError, RuntimeError, ArithmeticError) as exc:
            logger.warning(f"Solver {func!r} raised an error: {exc}")
            continue
        if info == 0 and np.all(np.isfinite(x)):
            return np.ascontiguousarray(x, dtype=np.float64)
        logger.warning(
            f"Solver {func!r} failed to converge within {max_iterations} iterations. Info: {info}"
        )

    if not fallback_to_direct or is_direct:
        raise SolverError(
            f"All solvers failed to converge within {max_iterations} iterations."
        )

    logger.info("Falling back to direct solver (spsolve).")
    return _solve_direct(A_csr, b)


def _solve_direct(
    A_csr: typing.Union[csr_array, csr_matrix], b: np.typing.NDArray
) -> np.typing.NDArray:
    try:
        x = spsolve(csr_matrix(A_csr).tocsc(), b)
    except Exception as exc:
        raise SolverError("The direct solver failed to solve the system.") from exc
    if not np.all(np.isfinite(x)):
        raise SolverError("Direct solver produced non-finite values.")
    return np.ascontiguousarray(x, dtype=np.float64)
