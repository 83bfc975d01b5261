# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
import logging

logger = logging.getLogger(__name__)


def handle_background_exception(e, context=None):
    """
    Log an exception raised somewhere nobody is waiting on the result, e.g. inside a
    connection status observer or a method dispatch task.

    :param Exception e: Exception object raised from inside a background task
    :param str context: Optional description of what was running when it was raised
    """
    if context:
        msg = "Exception caught in background task ({}). Unable to handle.".format(context)
    else:
        msg = "Exception caught in background task. Unable to handle."
    logger.error(msg=msg, exc_info=e)

