import logging
import os
import pwd

logger = logging.getLogger(__name__)

# Return codes handed back to config scripts.
DROPPED = 0
NOT_DROPPED = 1
GROUPS_NOT_CLEARED = 2


def drop_root(uid: int, gid: int) -> int:
    """Give up root in favor of uid/gid.

    Supplementary groups go first, then the group, then the user; the other order would leave us without
    permission to change the group. Returns 0 on success, 2 if the supplementary groups could not be cleared,
    and 1 for anything else (including not being root in the first place).
    """
    if os.getuid() != 0:
        logger.warning("Not running as root, so there is nothing to drop")
        return NOT_DROPPED
    try:
        os.setgroups([])
    except OSError:
        logger.error("Could not clear supplementary groups", exc_info=True)
        return GROUPS_NOT_CLEARED
    try:
        os.setgid(gid)
        os.setuid(uid)
    except OSError:
        logger.error("Could not switch to uid %d gid %d", uid, gid, exc_info=True)
        return NOT_DROPPED
    logger.info("Dropped root, now running as uid %d gid %d", uid, gid)
    return DROPPED


def drop_root_to_user(username: str) -> int:
    try:
        entry = pwd.getpwnam(username)
    except (KeyError, TypeError):
        logger.error("No such user %r", username)
        return NOT_DROPPED
    return drop_root(entry.pw_uid, entry.pw_gid)
