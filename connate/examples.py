"""Example configuration for a per-user session manager."""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

from connate.config import (
    Config,
    Exec,
    FileMode,
    FilePerm,
    LogFile,
    Ready,
    RetryNever,
    Service,
    Target,
)

_LOCK_FILE = "/run/user/1000/connate-lock"

_SESSION_ENV = (
    "PATH=/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin",
    "XDG_RUNTIME_DIR=/run/user/1000",
    "GPG_AGENT_INFO=/run/user/1000/gnupg/S.gpg-agent::1",
    "PULSE_SERVER=unix:/run/user/1000/pulse/native",
    "MPD_HOST=/run/user/1000/S.mpd",
    "CONNATE_LOCK_FILE=/run/user/1000/connate-lock",
)


def _private_log(name: str) -> LogFile:
    return LogFile(
        path=f"/run/user/1000/log/{name}.log",
        mode=FileMode.OVERWRITE,
        permissions=FilePerm.PRIVATE,
    )


def user_config() -> Config:
    """A user session: agents, an X session with its clients, and music daemons."""
    default = Service(
        name="unspecified-service-name",
        init_target=Target.DOWN,
        max_setup_time=timedelta(seconds=30),
        max_ready_time=timedelta(seconds=10),
        max_stop_time=timedelta(seconds=10),
        max_cleanup_time=timedelta(seconds=10),
        retry=RetryNever(),
        env=_SESSION_ENV + ("DISPLAY=:0",),
        no_new_privs=False,
    )

    services = (
        # Session
        replace(
            default,
            name="session",
            init_target=Target.UP,
            groups=("gpg-agent", "ssh-agent", "dbus"),
        ),
        replace(
            default,
            name="gpg-agent",
            init_target=Target.UP,
            run=Exec(("/usr/bin/gpg-agent", "--daemon", "--verbose")),
            ready=Ready.DAEMONIZE,
            log=_private_log("gpg-agent"),
            # pinentry sometimes locks up
            stop_all_children=True,
        ),
        replace(
            default,
            name="ssh-agent",
            init_target=Target.UP,
            setup=Exec(("/bin/rm", "-f", "/run/user/1000/S.ssh-agent")),
            run=Exec(("/usr/bin/ssh-agent", "-D", "-a", "/run/user/1000/S.ssh-agent")),
            log=_private_log("ssh-agent"),
        ),
        replace(
            default,
            name="dbus",
            init_target=Target.UP,
            run=Exec(
                (
                    "/usr/bin/dbus-daemon",
                    "--nofork",
                    "--session",
                    "--address",
                    "unix:path=/run/user/1000/S.dbus",
                )
            ),
            log=_private_log("dbus"),
        ),
        # GUI
        replace(
            default,
            name="xorg",
            groups=("dwm", "dwmstatus", "xcape", "dunst"),
            run=Exec(("/usr/bin/xinit",)),
            ready=Ready.NOTIFY,
            log=_private_log("xorg"),
            # The X server sets DISPLAY itself.
            env=_SESSION_ENV,
        ),
        replace(
            default,
            name="dwm",
            needs=("xorg",),
            groups=("dwmstatus",),
            run=Exec(("/usr/bin/dwm",)),
        ),
        replace(
            default,
            name="dwmstatus",
            needs=("xorg", "dwm"),
            run=Exec(("/usr/bin/dwmstatus",)),
        ),
        replace(
            default,
            name="xcape",
            needs=("xorg",),
            run=Exec(("/usr/bin/xcape", "-d")),
        ),
        replace(
            default,
            name="dunst",
            needs=("xorg",),
            run=Exec(("/usr/bin/dunst",)),
            log=_private_log("dunst"),
        ),
        # Audio
        replace(
            default,
            name="mpd",
            conflicts=("moc",),
            run=Exec(("/usr/bin/mpd", "--no-daemon", "--verbose")),
            log=_private_log("mpd"),
        ),
        replace(
            default,
            name="moc",
            conflicts=("mpd",),
            run=Exec(("/usr/bin/mocp", "--foreground", "--server")),
            log=_private_log("moc"),
        ),
    )

    return Config(lock_file=_LOCK_FILE, default_service=default, services=services)