import functools
import inspect

from loguru import logger


def _bound_params(func, args, kwargs) -> dict:
    sig = inspect.signature(func)
    bound_args = sig.bind(*args, **kwargs)
    bound_args.apply_defaults()
    params = dict(bound_args.arguments)
    params.pop("self", None)
    return params


def safe_func_wrapper(func):
    """
    A decorator that logs function entry, exit, and exceptions.

    Works for plain functions and coroutine functions alike:
    - Logs the function name and parameters before execution
    - Logs a success message after successful execution
    - Logs and re-raises exceptions as RuntimeError
    """
    func_name = func.__qualname__

    if inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            logger.info(f"Entering {func_name} with params: {_bound_params(func, args, kwargs)}")
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.error(f"{func_name} raised {type(e).__name__}: {e}")
                raise RuntimeError(f"{func_name} failed: {type(e).__name__}: {e}") from e
            logger.info(f"{func_name} succeeded")
            return result

        return async_wrapper

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        logger.info(f"Entering {func_name} with params: {_bound_params(func, args, kwargs)}")
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            logger.error(f"{func_name} raised {type(e).__name__}: {e}")
            raise RuntimeError(f"{func_name} failed: {type(e).__name__}: {e}") from e
        logger.info(f"{func_name} succeeded")
        return result

    return wrapper
