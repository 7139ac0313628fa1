"""Where each record lives in the shared store."""

from store.tree import join_path

USERDATA = "Userdata"
BROADCASTING_ROOMS = "BroadcastingRooms"
HEARTBEAT_SOURCE = "Watch1"


def app_status(user_id: str) -> str:
    return join_path(USERDATA, user_id, "AppStatus")


def app_state(user_id: str) -> str:
    return join_path(USERDATA, user_id, "AppState")


def heartbeat(user_id: str) -> str:
    return join_path(USERDATA, user_id, "Heartbeat", HEARTBEAT_SOURCE)


def groups(host_id: str) -> str:
    return join_path(USERDATA, host_id, "Groups")


def group(host_id: str, session_id: str) -> str:
    return join_path(groups(host_id), session_id)


def group_viewers(host_id: str, session_id: str) -> str:
    return join_path(group(host_id, session_id), "viewers")


def group_viewer(host_id: str, session_id: str, viewer_id: str) -> str:
    return join_path(group_viewers(host_id, session_id), viewer_id)


def current_group(user_id: str) -> str:
    return join_path(USERDATA, user_id, "CurrentGroup")


def broadcast_room(session_id: str) -> str:
    return join_path(BROADCASTING_ROOMS, session_id)
