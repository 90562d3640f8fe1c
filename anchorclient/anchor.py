# Copyright (C) 2017 The timeanchor developers
#
# This file is part of timeanchor.
#
# It is subject to the license terms in the LICENSE file found in the top-level
# directory of this distribution.
#
# No part of timeanchor including this file, may be copied,
# modified, propagated, or distributed except according to the terms contained
# in the LICENSE file.

import logging
import sys

import anchorclient.args


def main():
    args = anchorclient.args.parse_anchor_args(sys.argv[1:])

    logging.basicConfig(format='%(message)s')

    logger = logging.getLogger()
    if args.verbosity == 0:
        logger.setLevel(logging.INFO)
    elif args.verbosity > 0:
        logger.setLevel(logging.DEBUG)
    elif args.verbosity == -1:
        logger.setLevel(logging.WARNING)
    elif args.verbosity < -1:
        logger.setLevel(logging.ERROR)

    if not hasattr(args, 'cmd_func'):
        args.parser.error('No command specified')

    args.cmd_func(args)


if __name__ == '__main__':
    main()
