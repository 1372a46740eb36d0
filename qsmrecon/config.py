"""Module for pipeline configuration."""

import typing

from .exceptions import ConfigurationError


READOUTS = ('unipolar', 'bipolar')

# Canonical unwrapping method names and their accepted aliases.
UNWRAP_METHODS = {
    'prelude': 'prelude',
    'guided_region': 'prelude',
    'guided-region': 'prelude',
    'bestpath': 'bestpath',
    'path_based': 'bestpath',
    'path-based': 'bestpath',
}

BACKGROUND_METHODS = ('pdf', 'sharp', 'resharp', 'esharp', 'lbv')


def _coerce(name: str, value: typing.Any, kind: type) -> typing.Any:
    try:
        return kind(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be numeric, got {value!r}.") from exc


class QSMOptions:
    """
    Options controlling a QSM reconstruction run.

    All options are optional and defaulted. `validate()` is called on
    construction, so an instance always holds normalised, checked values.
    """

    _DEFAULTS = {
        'readout': 'unipolar',
        'r_mask': True,
        'fit_thr': 20.0,
        'bet_thr': 0.4,
        'bet_smooth': 2.0,
        'ph_unwrap': 'bestpath',
        'bkg_rm': ('resharp',),
        't_svd': 0.1,
        'smv_rad': 3.0,
        'tik_reg': 1e-4,
        'cgs_num': 200,
        'lbv_tol': 0.01,
        'lbv_peel': 2,
        'pdf_tol': 0.1,
        'pdf_num': 30,
        'esharp_radius': (10, 10, 5),
        'tv_reg': 5e-4,
        'inv_num': 500,
        'unwrap_workers': None,
        'backend_workers': 1,
        'unwrap_timeout': None,
        'bestpath_command': ('3DSRNCP',),
    }

    def __init__(self, **kwargs):
        """
        Initializes the options.

        Args:
            **kwargs: Any subset of the option names listed in `_DEFAULTS`.

        Raises:
            ConfigurationError: If an unknown option is given or a value is invalid.
        """
        unknown = sorted(set(kwargs) - set(self._DEFAULTS))
        if unknown:
            raise ConfigurationError(f"Unknown option(s): {', '.join(unknown)}")
        for name, default in self._DEFAULTS.items():
            setattr(self, name, kwargs.get(name, default))
        self.validate()

    @classmethod
    def from_dict(cls, mapping: typing.Optional[typing.Mapping[str, typing.Any]]) -> 'QSMOptions':
        """Builds options from a mapping; None gives the defaults."""
        return cls(**dict(mapping or {}))

    def to_dict(self) -> dict:
        """Returns the options as a plain dict."""
        return {name: getattr(self, name) for name in self._DEFAULTS}

    def validate(self) -> None:
        """
        Normalises and checks every option.

        Raises:
            ConfigurationError: On the first invalid value found.
        """
        readout = str(self.readout).lower()
        if readout not in READOUTS:
            raise ConfigurationError(
                f"readout must be one of {READOUTS}, got '{self.readout}'."
            )
        self.readout = readout

        method = str(self.ph_unwrap).lower()
        if method not in UNWRAP_METHODS:
            raise ConfigurationError(
                f"Unrecognised unwrapping method '{self.ph_unwrap}'; "
                f"expected 'prelude' or 'bestpath'."
            )
        self.ph_unwrap = UNWRAP_METHODS[method]

        bkg_rm = self.bkg_rm
        if isinstance(bkg_rm, str):
            bkg_rm = (bkg_rm,)
        if bkg_rm is None or len(bkg_rm) == 0:
            raise ConfigurationError("At least one background field removal method is required.")
        normalised = []
        for name in bkg_rm:
            name = str(name).lower()
            if name not in BACKGROUND_METHODS:
                raise ConfigurationError(
                    f"Unrecognised background field removal method '{name}'; "
                    f"expected a subset of {BACKGROUND_METHODS}."
                )
            if name not in normalised:
                normalised.append(name)
        self.bkg_rm = tuple(normalised)

        self.r_mask = bool(self.r_mask)
        for name in ('fit_thr', 't_svd', 'smv_rad', 'lbv_tol', 'pdf_tol', 'bet_smooth'):
            value = _coerce(name, getattr(self, name), float)
            if value <= 0:
                raise ConfigurationError(f"{name} must be positive, got {value}.")
            setattr(self, name, value)
        for name in ('tik_reg', 'tv_reg'):
            value = _coerce(name, getattr(self, name), float)
            if value < 0:
                raise ConfigurationError(f"{name} must be non-negative, got {value}.")
            setattr(self, name, value)
        bet_thr = _coerce('bet_thr', self.bet_thr, float)
        if not 0 < bet_thr < 1:
            raise ConfigurationError(f"bet_thr must lie in (0, 1), got {self.bet_thr}.")
        self.bet_thr = bet_thr

        for name in ('cgs_num', 'pdf_num', 'inv_num', 'backend_workers'):
            value = _coerce(name, getattr(self, name), int)
            if value < 1:
                raise ConfigurationError(f"{name} must be a positive integer, got {value}.")
            setattr(self, name, value)
        lbv_peel = _coerce('lbv_peel', self.lbv_peel, int)
        if lbv_peel < 0:
            raise ConfigurationError(f"lbv_peel must be non-negative, got {self.lbv_peel}.")
        self.lbv_peel = lbv_peel

        if self.unwrap_workers is not None and _coerce('unwrap_workers', self.unwrap_workers, int) < 1:
            raise ConfigurationError("unwrap_workers must be None or a positive integer.")
        if self.unwrap_timeout is not None and _coerce('unwrap_timeout', self.unwrap_timeout, float) <= 0:
            raise ConfigurationError("unwrap_timeout must be None or positive.")

        try:
            radius = tuple(int(r) for r in self.esharp_radius)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(
                f"esharp_radius must be three positive integers, got {self.esharp_radius!r}."
            ) from exc
        if len(radius) != 3 or any(r < 1 for r in radius):
            raise ConfigurationError(f"esharp_radius must be three positive integers, got {self.esharp_radius}.")
        self.esharp_radius = radius

        command = self.bestpath_command
        if isinstance(command, str):
            command = (command,)
        if not command:
            raise ConfigurationError("bestpath_command must name an executable.")
        self.bestpath_command = tuple(str(c) for c in command)

    def __repr__(self) -> str:
        items = ', '.join(f"{k}={v!r}" for k, v in self.to_dict().items())
        return f"QSMOptions({items})"
