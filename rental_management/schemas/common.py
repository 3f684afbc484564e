from datetime import datetime
from typing import Annotated

from pydantic import AfterValidator

from rental_management.clock import as_local_naive

# ISO strings with "Z" or an offset are converted on the way in
LocalDateTime = Annotated[datetime, AfterValidator(as_local_naive)]
