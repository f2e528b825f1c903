# SPDX-FileCopyrightText: 2025 tegrakeys contributors
#
# SPDX-License-Identifier: GPL-2.0-or-later

import tegrakeys

if __name__ == "__main__":
    tegrakeys._main()
