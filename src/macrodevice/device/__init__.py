# SPDX-FileCopyrightText: 2021 Rose Davidson <rose@metaclassical.com>
#
# SPDX-License-Identifier: GPL-3.0-or-later

# Device level:
# each backend owns exactly one OS resource (hid handle, event file, usb handle, serial port, X display)
# and turns whatever that resource produces into a tuple of strings.

# Session level:
# one trio task per backend drives load_settings -> open_device -> wait_for_event* -> close_device
# and hands every event to the single dispatcher task that owns the script engine.
